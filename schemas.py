"""
Database Schemas

MongoDB collection schemas as Pydantic models. Each top-level class maps to a
collection with its lowercase name (User -> "user", Job -> "job").
Documents are stored with camelCase keys, the same names the web client uses.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from errors import ValidationError, pydantic_messages

Role = Literal["customer", "provider", "admin"]
VerificationStatus = Literal["incomplete", "pending", "approved", "rejected"]
AvailabilityStatus = Literal["available", "busy", "offline"]
Urgency = Literal["low", "medium", "high"]
PaymentType = Literal["fixed", "hourly"]
DurationUnit = Literal["hours", "days"]
JobStatus = Literal["open", "assigned", "escrow_funded", "in_progress", "completed", "cancelled"]

ROLES = ("customer", "provider", "admin")
CATEGORIES = (
    "Carpentry",
    "Plumbing",
    "Electrical",
    "Painting",
    "HVAC",
    "Welding",
    "Cooking",
    "Mechanic",
    "House Help",
)
Category = Literal[CATEGORIES]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_coordinates(v: Optional[List[float]]) -> Optional[List[float]]:
    if v is None:
        return v
    if len(v) != 2:
        raise ValueError("Coordinates must be an array of [longitude, latitude]")
    lng, lat = v
    if not -180 <= lng <= 180 or not -90 <= lat <= 90:
        raise ValueError("Coordinates are out of range")
    return v


# ----------------------------
# User
# ----------------------------

class GeoPoint(CamelModel):
    type: Literal["Point"] = "Point"
    coordinates: Optional[List[float]] = None
    address: Optional[str] = Field(None, max_length=300)

    check_coordinates = field_validator("coordinates")(_check_coordinates)


class Skill(CamelModel):
    name: str = Field(..., min_length=1, max_length=60)
    proficiency: int = Field(5, ge=1, le=10)
    years: int = Field(0, ge=0)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Each skill must have a valid name")
        return v


class FixedRateProject(CamelModel):
    name: str = Field(..., min_length=1, max_length=120)
    details: str = Field(..., min_length=1, max_length=500)
    rate: float = Field(..., ge=0)


class Portfolio(CamelModel):
    title: str = Field(..., min_length=1, max_length=120)
    description: str = Field("", max_length=1000)
    images: List[str] = Field(default_factory=list, max_length=10)


class ServiceArea(CamelModel):
    address: str = Field(..., min_length=1, max_length=300)
    radius_km: int = Field(25, ge=5, le=200)
    coordinates: Optional[List[float]] = None

    check_coordinates = field_validator("coordinates")(_check_coordinates)


class ProviderDetails(CamelModel):
    headline: Optional[str] = Field(None, max_length=120)
    work_description: Optional[str] = Field(None, max_length=500)
    bio: Optional[str] = Field(None, max_length=500)
    skills: List[Skill] = Field(default_factory=list)
    hourly_rate: Optional[float] = Field(None, ge=0)
    min_call_out_fee: Optional[float] = Field(None, ge=0)
    travel_fee_per_km: Optional[float] = Field(None, ge=0)
    travel_threshold_km: Optional[float] = Field(None, ge=0)
    fixed_rate_projects: List[FixedRateProject] = Field(default_factory=list)
    availability_status: AvailabilityStatus = "available"
    portfolios: List[Portfolio] = Field(default_factory=list)
    service_areas: List[ServiceArea] = Field(default_factory=list)
    experience_years: Optional[float] = Field(None, ge=0)
    verification_status: VerificationStatus = "incomplete"
    rejection_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    is_verified: bool = False


class Ratings(CamelModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class User(CamelModel):
    full_name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    role: Role = "customer"
    phone: Optional[str] = Field(None, max_length=40)
    avatar: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=500)
    location: Optional[GeoPoint] = None
    provider_details: ProviderDetails = Field(default_factory=ProviderDetails)
    ratings: Ratings = Field(default_factory=Ratings)
    is_active: bool = True
    is_suspended: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    report_count: int = 0
    admin_notes: Optional[str] = None
    deleted_at: Optional[datetime] = None


# ----------------------------
# Job
# ----------------------------

class Location(CamelModel):
    address: str = Field(..., min_length=1, max_length=300)
    city: Optional[str] = Field(None, max_length=120)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class EstimatedDuration(CamelModel):
    value: float = Field(..., gt=0)
    unit: DurationUnit = "hours"


class Escrow(CamelModel):
    amount: float = Field(..., ge=0)
    funded: bool = False
    funded_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class JobReview(CamelModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class JobContent(CamelModel):
    """The client-editable part of a job."""

    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    category: Category
    location: Location
    budget: float = Field(..., gt=0)
    payment_type: PaymentType = "fixed"
    preferred_date: Optional[datetime] = None
    urgency: Urgency = "medium"
    estimated_duration: Optional[EstimatedDuration] = None


class Job(JobContent):
    """
    Job postings created by customers.
    Collection: "job"

    ``client``, ``assignedWorker`` and ``applications[].worker`` hold user
    ObjectIds and are written by the job routes directly.
    """

    status: JobStatus = "open"
    is_active: bool = True
    escrow: Escrow
    views: int = 0


def validate_document(model_cls, data: dict):
    """Validate ``data`` against a collection schema, raising the API's ValidationError."""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Validation failed", details=pydantic_messages(exc.errors()))
