"""
Database Schemas for Tuitron

Each Pydantic model corresponds to a MongoDB collection (see database.COLLECTIONS).
These are used for validation before inserting via database helpers; the
*Payload models describe request bodies.
"""
from __future__ import annotations
from datetime import datetime
from typing import Optional, List, Literal, Any, Dict
from pydantic import BaseModel, Field, EmailStr, AliasChoices, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

Role = Literal["student", "user", "tutor", "admin"]
ROLES = ("student", "user", "tutor", "admin")
SELF_ASSIGNABLE_ROLES = ("student", "user")
DEFAULT_ROLE = "student"
UNKNOWN_ROLE = "user"

ListingStatus = Literal["Pending", "Approved", "Rejected"]
LISTING_STATUSES = ("Pending", "Approved", "Rejected")

TutorStatus = Literal["pending", "approved", "rejected"]
TUTOR_STATUSES = ("pending", "approved", "rejected")

ApplicationStatus = Literal["pending", "accepted", "rejected"]
APPLICATION_STATUSES = ("pending", "accepted", "rejected")

# Older clients send the listing vocabulary or an action keyword
_APPLICATION_STATUS_SPELLINGS = {
    "pending": "pending",
    "accepted": "accepted",
    "accept": "accepted",
    "approved": "accepted",
    "approve": "accepted",
    "rejected": "rejected",
    "reject": "rejected",
}


def normalize_application_status(value: str) -> Optional[str]:
    """Map any accepted spelling onto the canonical application status, or None."""
    if not isinstance(value, str):
        return None
    return _APPLICATION_STATUS_SPELLINGS.get(value.strip().lower())


def normalize_listing_status(value: str) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip().capitalize()
    return value if value in LISTING_STATUSES else None


# Accounts
class Account(BaseModel):
    uid: Optional[str] = Field(None, description="Identity provider subject id")
    email: EmailStr
    name: str = Field(..., min_length=1, description="Full name")
    phone: str = Field(..., min_length=1)
    role: Role = DEFAULT_ROLE
    image: Optional[str] = None


class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    role: Optional[str] = None


class ProfilePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None


class RolePayload(BaseModel):
    role: str


# Tuition listings
class PostedBy(BaseModel):
    email: EmailStr
    uid: Optional[str] = None


class TuitionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str = Field(..., min_length=1)
    class_level: str = Field(..., min_length=1, validation_alias=AliasChoices("class_level", "class", "course"))
    location: str = Field(..., min_length=1)
    budget: float = Field(..., ge=0, validation_alias=AliasChoices("budget", "salary"))
    schedule: str = Field(..., min_length=1)
    details: Optional[str] = None
    category: Optional[str] = None
    method: Optional[str] = Field(None, description="online | offline | hybrid")
    gender: Optional[str] = Field(None, description="Preferred tutor gender")


class TuitionPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: Optional[str] = Field(None, min_length=1)
    class_level: Optional[str] = Field(None, min_length=1, validation_alias=AliasChoices("class_level", "class", "course"))
    location: Optional[str] = Field(None, min_length=1)
    budget: Optional[float] = Field(None, ge=0, validation_alias=AliasChoices("budget", "salary"))
    schedule: Optional[str] = Field(None, min_length=1)
    details: Optional[str] = None
    category: Optional[str] = None
    method: Optional[str] = None
    gender: Optional[str] = None


class Tuition(TuitionPayload):
    posted_by: PostedBy
    status: ListingStatus = "Pending"
    payment_status: Literal["unpaid", "paid"] = "unpaid"


class StatusPayload(BaseModel):
    status: str


# Tutor profiles
class TutorPayload(BaseModel):
    name: str = Field(..., min_length=1)
    qualifications: str = Field(..., min_length=1)
    experience: Optional[str] = None
    subjects: List[str] = []
    class_levels: List[str] = []
    location: Optional[str] = None
    expected_salary: Optional[float] = Field(None, ge=0)


class TutorPatch(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    qualifications: Optional[str] = Field(None, min_length=1)
    experience: Optional[str] = None
    subjects: Optional[List[str]] = None
    class_levels: Optional[List[str]] = None
    location: Optional[str] = None
    expected_salary: Optional[float] = Field(None, ge=0)


class TutorProfile(TutorPayload):
    email: EmailStr
    status: TutorStatus = "pending"


# Applications
class ApplicationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tuition_id: str = Field(..., validation_alias=AliasChoices("tuition_id", "tuitionId"))
    message: Optional[str] = None
    qualifications: Optional[str] = None


class Application(BaseModel):
    tuition_id: str
    tutor_email: EmailStr
    tutor_id: Optional[str] = Field(None, description="Applicant account id, when registered")
    message: Optional[str] = None
    qualifications: Optional[str] = None
    status: ApplicationStatus = "pending"


class ApplicationStatusPayload(BaseModel):
    status: Optional[str] = None
    action: Optional[str] = Field(None, description="approve | reject")


# Payments
class CheckoutPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tuition_id: str = Field(..., validation_alias=AliasChoices("tuition_id", "tuitionId"))
    subject: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0, description="Amount in major currency units")


class Payment(BaseModel):
    transaction_id: str
    amount: float
    currency: str
    customer_email: Optional[EmailStr] = None
    tuition_id: str
    subject: Optional[str] = None
    payment_status: str = "paid"
    paid_at: datetime


class CheckoutSession(BaseModel):
    """What the payment provider reports about a hosted checkout session."""
    id: str
    payment_intent: Optional[str] = None
    payment_status: str
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = {}


def validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return "; ".join(parts) or "Invalid payload"


def parse(model, data: Any):
    """Validate a dict (or an already-built model) against `model`, raising our ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        raise ValidationError(validation_message(e)) from e
