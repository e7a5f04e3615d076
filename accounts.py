"""
Account & role lifecycle.

Owns the `accounts` collection: unique-by-email registration, profile edits,
admin-driven role changes and deletion. At least one admin must remain once
one exists, and no admin can demote or delete themselves.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Identity
from database import ACCOUNTS, create_document, get_documents, now, oid, serialize, update_document
from errors import Conflict, Forbidden, InvariantViolation, NotFound, ValidationError
from schemas import (
    Account, ProfilePayload, RegisterPayload, parse, ROLES, SELF_ASSIGNABLE_ROLES, DEFAULT_ROLE, UNKNOWN_ROLE,
)

logger = logging.getLogger(__name__)

LAST_ADMIN_MESSAGE = "At least one admin must remain"


class AccountService:
    def __init__(self, db: Database):
        self.db = db
        self.accounts = db[ACCOUNTS]

    # --- Lookups ---
    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        return self.accounts.find_one({"email": email.lower()})

    def is_admin(self, email: str) -> bool:
        account = self.find_by_email(email)
        return bool(account) and account.get("role") == "admin"

    def require_admin(self, email: str) -> Dict[str, Any]:
        account = self.find_by_email(email)
        if not account or account.get("role") != "admin":
            raise Forbidden("Admin only")
        return account

    def get(self, account_id: Any) -> Dict[str, Any]:
        account = self.accounts.find_one({"_id": oid(account_id)})
        if not account:
            raise NotFound("User not found")
        return account

    def me(self, email: str) -> Dict[str, Any]:
        account = self.find_by_email(email)
        if not account:
            raise NotFound("User not found")
        return serialize(account)

    def list_accounts(self, actor_email: str, role: Optional[str] = None) -> List[Dict[str, Any]]:
        self.require_admin(actor_email)
        query = {"role": role} if role else {}
        return get_documents(self.db, ACCOUNTS, query, sort=[("created_at", -1)])

    def get_role(self, email: str) -> str:
        # Unknown emails get the default role instead of a 404 so account existence is not revealed
        account = self.find_by_email(email)
        if not account:
            return UNKNOWN_ROLE
        return account.get("role") or UNKNOWN_ROLE

    def count_admins(self) -> int:
        return self.accounts.count_documents({"role": "admin"})

    # --- Registration / profile ---
    def register_or_fetch(self, identity: Identity, profile: Union[Dict[str, Any], RegisterPayload]) -> Dict[str, Any]:
        existing = self.find_by_email(identity.email)
        if existing:
            return serialize(existing)

        payload = parse(RegisterPayload, profile)
        role = (payload.role or DEFAULT_ROLE).strip().lower()
        if role not in SELF_ASSIGNABLE_ROLES:
            raise ValidationError(f"Role must be one of {', '.join(SELF_ASSIGNABLE_ROLES)}")

        account = parse(Account, {
            "uid": identity.subject_id,
            "email": identity.email.lower(),
            "name": payload.name,
            "phone": payload.phone,
            "role": role,
            "image": identity.picture_url,
        })
        doc = account.model_dump()
        doc["email"] = identity.email.lower()
        try:
            create_document(self.db, ACCOUNTS, doc)
        except DuplicateKeyError:
            # Lost a race against a concurrent first login for the same email
            return serialize(self.find_by_email(identity.email))
        logger.info(f"Account created for {doc['email']} with role {role}")
        return serialize(self.find_by_email(identity.email))

    def update_profile(self, email: str, changes: Union[Dict[str, Any], ProfilePayload]) -> Dict[str, Any]:
        payload = parse(ProfilePayload, changes)
        updates = payload.model_dump(exclude_unset=True, exclude_none=True)
        if not updates:
            raise ValidationError("Nothing to update")
        account = self.find_by_email(email)
        if not account:
            raise NotFound("User not found")
        update_document(self.db, ACCOUNTS, account["_id"], updates)
        return self.me(email)

    # --- Admin actions ---
    def change_role(self, actor_email: str, target_id: Any, new_role: str) -> Dict[str, Any]:
        actor = self.require_admin(actor_email)
        new_role = (new_role or "").strip().lower()
        if new_role not in ROLES:
            raise ValidationError(f"Role must be one of {', '.join(ROLES)}")

        target = self.get(target_id)
        if target.get("role") == new_role:
            return serialize(target)

        if target.get("role") == "admin":
            if target["_id"] == actor["_id"]:
                logger.warning(f"Admin {actor_email} tried to change their own role to {new_role}")
                raise InvariantViolation("You cannot remove your own admin role")
            if self.count_admins() <= 1:
                logger.warning(f"Refused demotion of last admin {target['email']}")
                raise InvariantViolation(LAST_ADMIN_MESSAGE)

        # Conditional on the role we checked so a concurrent change is not overwritten
        result = self.accounts.update_one(
            {"_id": target["_id"], "role": target.get("role")},
            {"$set": {"role": new_role, "updated_at": now()}},
        )
        if result.matched_count == 0:
            raise Conflict("User was modified concurrently, retry")

        if target.get("role") == "admin" and self.count_admins() < 1:
            self.accounts.update_one({"_id": target["_id"]}, {"$set": {"role": "admin"}})
            logger.warning(f"Reverted demotion of {target['email']}: no admin would remain")
            raise InvariantViolation(LAST_ADMIN_MESSAGE)

        logger.info(f"{actor_email} changed role of {target['email']} from {target.get('role')} to {new_role}")
        return serialize(self.get(target["_id"]))

    def delete_account(self, actor_email: str, target_id: Any) -> Dict[str, Any]:
        actor = self.require_admin(actor_email)
        target = self.get(target_id)
        if target["_id"] == actor["_id"]:
            raise InvariantViolation("You cannot delete your own account")

        if target.get("role") == "admin" and self.count_admins() <= 1:
            raise InvariantViolation(LAST_ADMIN_MESSAGE)

        result = self.accounts.delete_one({"_id": target["_id"]})
        if result.deleted_count == 0:
            raise NotFound("User not found")

        if target.get("role") == "admin" and self.count_admins() < 1:
            self.accounts.insert_one(target)
            logger.warning(f"Restored {target['email']}: no admin would remain")
            raise InvariantViolation(LAST_ADMIN_MESSAGE)

        logger.info(f"{actor_email} deleted account {target['email']}")
        return {"deletedCount": result.deleted_count}

    def promote_to_tutor(self, email: str) -> bool:
        """Give the account of `email` the tutor role. Admin accounts keep their role."""
        result = self.accounts.update_one(
            {"email": email.lower(), "role": {"$ne": "admin"}},
            {"$set": {"role": "tutor", "updated_at": now()}},
        )
        return result.matched_count > 0
