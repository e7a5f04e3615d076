"""
Tutor profiles.

A tutor profile is separate from the account: it is created by self
registration, moderated by an admin, and on approval the owning account is
promoted to the tutor role.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from accounts import AccountService
from database import TUTOR_PROFILES, create_document, get_document, get_documents, oid, serialize, update_document
from errors import Conflict, Forbidden, NotFound, ValidationError
from schemas import TutorPatch, TutorPayload, TutorProfile, TUTOR_STATUSES, parse

logger = logging.getLogger(__name__)

LATEST_LIMIT = 5


class TutorService:
    def __init__(self, db: Database, accounts: AccountService):
        self.db = db
        self.accounts = accounts
        self.profiles = db[TUTOR_PROFILES]

    def _get(self, profile_id: Any) -> Dict[str, Any]:
        profile = get_document(self.db, TUTOR_PROFILES, profile_id)
        if not profile:
            raise NotFound("Tutor not found")
        return profile

    def _check_owner(self, actor_email: str, profile: Dict[str, Any]) -> None:
        if profile.get("email") != actor_email.lower() and not self.accounts.is_admin(actor_email):
            raise Forbidden("Only the tutor or an admin can change this profile")

    def register(self, email: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse(TutorPayload, fields)
        email = email.lower()
        if self.profiles.find_one({"email": email}):
            raise Conflict("Tutor profile already exists")
        profile = TutorProfile(email=email, **payload.model_dump())
        doc = profile.model_dump()
        doc["email"] = email
        try:
            profile_id = create_document(self.db, TUTOR_PROFILES, doc)
        except DuplicateKeyError:
            raise Conflict("Tutor profile already exists")
        logger.info(f"Tutor profile {profile_id} registered by {email}")
        return serialize(self.profiles.find_one({"_id": oid(profile_id)}))

    def query(
        self,
        status: Optional[str] = None,
        subject: Optional[str] = None,
        location: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status.lower()
        if subject:
            query["subjects"] = subject
        if location:
            query["location"] = {"$regex": re.escape(location), "$options": "i"}
        return get_documents(self.db, TUTOR_PROFILES, query, limit=limit, sort=[("created_at", -1)])

    def latest(self) -> List[Dict[str, Any]]:
        return self.query(status="approved", limit=LATEST_LIMIT)

    def get(self, profile_id: Any) -> Dict[str, Any]:
        return serialize(self._get(profile_id))

    def update(self, actor_email: str, profile_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        profile = self._get(profile_id)
        self._check_owner(actor_email, profile)
        updates = parse(TutorPatch, changes).model_dump(exclude_unset=True, exclude_none=True)
        if not updates:
            raise ValidationError("Nothing to update")
        update_document(self.db, TUTOR_PROFILES, profile["_id"], updates)
        return self.get(profile["_id"])

    def delete(self, actor_email: str, profile_id: Any) -> Dict[str, Any]:
        profile = self._get(profile_id)
        self._check_owner(actor_email, profile)
        result = self.profiles.delete_one({"_id": profile["_id"]})
        logger.info(f"Tutor profile {profile['_id']} deleted by {actor_email}")
        return {"deletedCount": result.deleted_count}

    def approve_tutor(self, actor_email: str, profile_id: Any, new_status: str) -> Dict[str, Any]:
        """
        Set a tutor profile's moderation status (admin only).

        Approval also promotes the owning account to the tutor role. The
        promotion is best effort: if the account is missing or the write
        fails, the status change still stands and the miss is logged.
        """
        self.accounts.require_admin(actor_email)
        new_status = (new_status or "").strip().lower()
        if new_status not in TUTOR_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(TUTOR_STATUSES)}")

        profile = self._get(profile_id)
        update_document(self.db, TUTOR_PROFILES, profile["_id"], {"status": new_status})
        logger.info(f"Tutor profile {profile['_id']} set to {new_status} by {actor_email}")

        result = self.get(profile["_id"])
        result["roleUpdated"] = False
        if new_status == "approved":
            try:
                result["roleUpdated"] = self.accounts.promote_to_tutor(profile["email"])
            except PyMongoError:
                logger.exception(f"Could not promote {profile['email']} to tutor")
            if not result["roleUpdated"]:
                logger.warning(f"Tutor {profile['email']} approved but account role was not updated")
        return result
