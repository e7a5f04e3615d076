"""
Tuition listings and tutor applications.

Updates and deletes fetch the document first and then check ownership, so a
missing id is a 404 and somebody else's listing is a 403.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from accounts import AccountService
from auth import Identity
from database import APPLICATIONS, LISTINGS, create_document, get_document, get_documents, oid, serialize, update_document
from errors import Conflict, Forbidden, NotFound, ValidationError
from schemas import (
    Application, ApplicationPayload, Tuition, TuitionPatch, TuitionPayload,
    normalize_application_status, normalize_listing_status, parse,
)

logger = logging.getLogger(__name__)

LATEST_LIMIT = 5
EQUALITY_FILTERS = {
    "email": "posted_by.email",
    "course": "class_level",
    "subject": "subject",
    "category": "category",
    "method": "method",
    "gender": "gender",
}


def build_listing_query(filters: Dict[str, Any]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for key, field in EQUALITY_FILTERS.items():
        value = filters.get(key)
        if value not in (None, ""):
            query[field] = value.lower() if key == "email" else value

    salary: Dict[str, float] = {}
    if filters.get("salaryMin") is not None:
        salary["$gte"] = float(filters["salaryMin"])
    if filters.get("salaryMax") is not None:
        salary["$lte"] = float(filters["salaryMax"])
    if salary:
        query["budget"] = salary

    location = filters.get("location")
    if location:
        query["location"] = {"$regex": re.escape(location), "$options": "i"}
    return query


class ListingService:
    def __init__(self, db: Database, accounts: AccountService):
        self.db = db
        self.accounts = accounts
        self.listings = db[LISTINGS]

    def fetch(self, listing_id: Any) -> Dict[str, Any]:
        listing = get_document(self.db, LISTINGS, listing_id)
        if not listing:
            raise NotFound("Tuition not found")
        return listing

    def owner_or_admin(self, actor_email: str, listing: Dict[str, Any]) -> None:
        owner = (listing.get("posted_by") or {}).get("email")
        if owner != actor_email.lower() and not self.accounts.is_admin(actor_email):
            raise Forbidden("Only the owner or an admin can do this")

    def create_listing(self, owner: Identity, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse(TuitionPayload, fields)
        tuition = Tuition(
            posted_by={"email": owner.email.lower(), "uid": owner.subject_id},
            **payload.model_dump(),
        )
        listing_id = create_document(self.db, LISTINGS, tuition)
        logger.info(f"Tuition {listing_id} posted by {owner.email}")
        return self.get(listing_id)

    def query_listings(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return get_documents(self.db, LISTINGS, build_listing_query(filters or {}))

    def latest(self) -> List[Dict[str, Any]]:
        return get_documents(self.db, LISTINGS, {}, limit=LATEST_LIMIT, sort=[("created_at", -1)])

    def get(self, listing_id: Any) -> Dict[str, Any]:
        return serialize(self.fetch(listing_id))

    def update_listing(self, actor_email: str, listing_id: Any, patch: Dict[str, Any]) -> Dict[str, Any]:
        listing = self.fetch(listing_id)
        self.owner_or_admin(actor_email, listing)
        updates = parse(TuitionPatch, patch).model_dump(exclude_unset=True, exclude_none=True)
        if not updates:
            raise ValidationError("Nothing to update")
        update_document(self.db, LISTINGS, listing["_id"], updates)
        return self.get(listing["_id"])

    def delete_listing(self, actor_email: str, listing_id: Any) -> Dict[str, Any]:
        listing = self.fetch(listing_id)
        self.owner_or_admin(actor_email, listing)
        result = self.listings.delete_one({"_id": listing["_id"]})
        logger.info(f"Tuition {listing['_id']} deleted by {actor_email}")
        return {"deletedCount": result.deleted_count}

    def set_status(self, actor_email: str, listing_id: Any, new_status: str) -> Dict[str, Any]:
        self.accounts.require_admin(actor_email)
        status = normalize_listing_status(new_status)
        if not status:
            raise ValidationError("Status must be Pending, Approved or Rejected")
        listing = self.fetch(listing_id)
        update_document(self.db, LISTINGS, listing["_id"], {"status": status})
        logger.info(f"Tuition {listing['_id']} set to {status} by {actor_email}")
        return self.get(listing["_id"])

    def mark_paid(self, listing_id: Any) -> int:
        return update_document(self.db, LISTINGS, listing_id, {"payment_status": "paid"})


class ApplicationService:
    """
    Tutor applications to listings.

    `status_policy` decides who may accept or reject: "admin" allows admins
    only, "owner" allows the listing owner as well as admins.
    """

    def __init__(self, db: Database, accounts: AccountService, listings: ListingService, status_policy: str = "admin"):
        self.db = db
        self.accounts = accounts
        self.listings = listings
        self.applications = db[APPLICATIONS]
        self.status_policy = status_policy

    def apply_to_tuition(self, tutor: Identity, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse(ApplicationPayload, fields)
        tuition = self.listings.fetch(payload.tuition_id)
        tuition_id = str(tuition["_id"])
        tutor_email = tutor.email.lower()

        if self.applications.find_one({"tuition_id": tuition_id, "tutor_email": tutor_email}):
            raise Conflict("You have already applied to this tuition")

        account = self.accounts.find_by_email(tutor_email)
        application = Application(
            tuition_id=tuition_id,
            tutor_email=tutor_email,
            tutor_id=str(account["_id"]) if account else None,
            message=payload.message,
            qualifications=payload.qualifications,
        )
        doc = application.model_dump()
        doc["tutor_email"] = tutor_email
        try:
            application_id = create_document(self.db, APPLICATIONS, doc)
        except DuplicateKeyError:
            raise Conflict("You have already applied to this tuition")
        logger.info(f"{tutor_email} applied to tuition {tuition_id}")
        return serialize(self.applications.find_one({"_id": oid(application_id)}))

    def my_applications(self, tutor_email: str) -> List[Dict[str, Any]]:
        return get_documents(self.db, APPLICATIONS, {"tutor_email": tutor_email.lower()}, sort=[("created_at", -1)])

    def for_tuition(self, actor_email: str, tuition_id: Any) -> List[Dict[str, Any]]:
        tuition = self.listings.fetch(tuition_id)
        self.listings.owner_or_admin(actor_email, tuition)
        return get_documents(self.db, APPLICATIONS, {"tuition_id": str(tuition["_id"])}, sort=[("created_at", -1)])

    def set_application_status(self, actor_email: str, application_id: Any, new_status: str) -> Dict[str, Any]:
        status = normalize_application_status(new_status)
        if not status:
            raise ValidationError("Status must be pending, accepted or rejected")

        application = self.applications.find_one({"_id": oid(application_id)})
        if not application:
            raise NotFound("Application not found")

        if self.status_policy == "owner":
            tuition = self.listings.fetch(application["tuition_id"])
            self.listings.owner_or_admin(actor_email, tuition)
        else:
            self.accounts.require_admin(actor_email)

        update_document(self.db, APPLICATIONS, application["_id"], {"status": status})
        logger.info(f"Application {application['_id']} set to {status} by {actor_email}")
        return serialize(self.applications.find_one({"_id": application["_id"]}))
