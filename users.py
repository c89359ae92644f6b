"""Minimal user records.

Accounts, passwords and tokens belong to the external auth service; this
module only keeps the fields loans are joined against. A ``password`` key
written by that service is never returned.
"""

import logging
from typing import Any, Dict, List, Optional

from clock import Clock, to_iso, utc_now
from database import DocumentStore
from errors import Conflict, NotFound, ValidationError
from validators import TextValidator

logger = logging.getLogger(__name__)

USERS = "users"
ROLES = ("user", "librarian")
PRIVATE_FIELDS = ("password",)
# Fields a user may change on their own profile.
PROFILE_FIELDS = ("name", "email", "phone", "address")
LIBRARIAN_PROFILE_FIELDS = PROFILE_FIELDS + ("bio",)


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in PRIVATE_FIELDS}


class UserDirectory:

    def __init__(self, store: DocumentStore, clock: Clock = utc_now) -> None:
        self.store = store
        self._clock = clock

    def create_user(self, name: Optional[str], email: Optional[str], role: str = "user",
                    phone: Optional[str] = None, address: Optional[str] = None) -> Dict[str, Any]:
        name = TextValidator.require_text(name, "name")
        if role not in ROLES:
            raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
        email = self._check_email(email, "")

        data = {
            "name": name,
            "email": email,
            "role": role,
            "phone": TextValidator.optional_text(phone),
            "address": TextValidator.optional_text(address),
            "createdAt": to_iso(self._clock()),
        }
        user_id = self.store.create(USERS, data)
        logger.info(f"User created: id={user_id} role={role}")
        return {"id": user_id, **data}

    def get_user(self, user_id: str) -> Dict[str, Any]:
        doc = self.store.get(USERS, user_id)
        if doc is None:
            raise NotFound("User not found")
        return public_user(doc)

    def list_users(self) -> List[Dict[str, Any]]:
        return [public_user(doc) for doc in self.store.query(USERS, order_by="createdAt")]

    def update_profile(self, user_id: str, changes: Dict[str, Any],
                       librarian: bool = False) -> Dict[str, Any]:
        """Apply a partial profile update: keys present replace, keys absent are kept.

        Only contact fields are editable here; roles and passwords are not.
        With ``librarian=True`` the user must have the librarian role and may
        also set ``bio``.
        """
        allowed = LIBRARIAN_PROFILE_FIELDS if librarian else PROFILE_FIELDS
        missing = "Librarian not found" if librarian else "User not found"
        changes = dict(changes)
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        if "name" in changes:
            changes["name"] = TextValidator.require_text(changes["name"], "name")
        if "email" in changes:
            changes["email"] = self._check_email(changes["email"], user_id)
        for field in ("phone", "address", "bio"):
            if field in changes:
                changes[field] = TextValidator.optional_text(changes[field])
        now = to_iso(self._clock())

        def apply(current: Dict[str, Any]) -> Dict[str, Any]:
            if librarian and current.get("role") != "librarian":
                raise NotFound(missing)
            return {**changes, "updatedAt": now}

        doc = self.store.atomic_update(USERS, user_id, apply)
        if doc is None:
            raise NotFound(missing)
        logger.info(f"Profile updated: id={user_id} fields={sorted(changes)}")
        return public_user(doc)

    def get_librarian(self, librarian_id: str) -> Dict[str, Any]:
        doc = self.store.get(USERS, librarian_id)
        if doc is None or doc.get("role") != "librarian":
            raise NotFound("Librarian not found")
        return public_user(doc)

    def _check_email(self, email: Any, user_id: str) -> str:
        email = TextValidator.require_text(email, "email").lower()
        if "@" not in email:
            raise ValidationError("email is not valid.")
        taken = self.store.query(USERS, {"email": email}, limit=1)
        if taken and taken[0]["id"] != user_id:
            raise Conflict("A user with this email already exists")
        return email
