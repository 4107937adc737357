"""
Database Schemas for the Scholarship Platform

MongoDB collections are described below using Pydantic models. The collections
reference each other by id, never by embedding:
- users: platform accounts (user, moderator, admin)
- scholarships: posted scholarships with derived counters
- applications: a student's application to one scholarship
- reviews: a rating and comment on a scholarship, owned by its author
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field

Role = Literal["user", "moderator", "admin"]
ApplicationStatus = Literal["Pending", "Approved", "Rejected"]

PENDING = "Pending"


def normalize_email(value: Any) -> Any:
    """Canonical stored/compared form of an email: trimmed and lowercased."""
    return value.strip().lower() if isinstance(value, str) else value


# Every email we store, issue in a token or compare against goes through this
Email = Annotated[EmailStr, AfterValidator(normalize_email)]


def now() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    email: Email
    name: Optional[str] = None
    role: Role = Field("user")
    photoURL: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    createdAt: datetime = Field(default_factory=now)


class Scholarship(BaseModel):
    model_config = ConfigDict(extra="allow")

    scholarshipName: str = Field(..., min_length=1)
    universityName: str = Field(..., min_length=1)
    universityImage: Optional[str] = None
    universityCountry: Optional[str] = None
    universityCity: Optional[str] = None
    universityWorldRank: Optional[int] = None
    subjectCategory: Optional[str] = None
    scholarshipCategory: Optional[str] = None
    degree: Optional[str] = None
    tuitionFees: Optional[float] = Field(None, allow_inf_nan=False)
    applicationFees: Optional[float] = Field(None, allow_inf_nan=False)
    serviceCharge: Optional[float] = Field(None, allow_inf_nan=False)
    applicationDeadline: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    postedUserEmail: Email
    postDate: datetime = Field(default_factory=now)
    createdAt: datetime = Field(default_factory=now)
    applicationCount: int = 0
    reviewCount: int = 0
    averageRating: float = 0


class Application(BaseModel):
    model_config = ConfigDict(extra="allow")

    scholarshipId: str = Field(..., description="Reference to scholarships _id")
    applicantEmail: Email
    applicantName: Optional[str] = None
    status: ApplicationStatus = Field(PENDING)
    applicationFee: Optional[float] = Field(None, allow_inf_nan=False)
    transactionId: Optional[str] = None
    appliedDate: datetime = Field(default_factory=now)
    paymentDate: Optional[datetime] = None
    moderatedAt: Optional[datetime] = None
    moderatedBy: Optional[str] = None
    feedback: Optional[str] = None


class Review(BaseModel):
    scholarshipId: str = Field(..., description="Reference to scholarships _id")
    reviewerEmail: Email
    reviewerName: Optional[str] = None
    reviewerImage: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field("", max_length=2000)
    reviewDate: datetime = Field(default_factory=now)
