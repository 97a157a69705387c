"""
Database Schemas

Pydantic models for the request bodies accepted by the API. Field names are
the camelCase keys stored in the MongoDB collections:
- DonationRequest -> "donationRequests" collection
- User -> "users" collection
- Blog -> "blogs" collection
"""

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator
from typing import Optional, Literal

# ---------------- Vocabularies -----------------

BloodGroup = Literal[
    "A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"
]

Role = Literal["donor", "volunteer", "admin"]
ROLES = ("donor", "volunteer", "admin")

UserStatus = Literal["active", "blocked"]
BlogStatus = Literal["draft", "published"]

PENDING = "pending"
INPROGRESS = "inprogress"
DONE = "done"
CANCELED = "canceled"
REQUEST_STATUSES = (PENDING, INPROGRESS, DONE, CANCELED)
FINAL_STATUSES = (DONE, CANCELED)

# ---------------- Donation Requests -----------------

class DonationRequest(BaseModel):
    """Body for creating or fully replacing a donation request.

    Extra descriptive keys sent by the front end are kept as-is.
    """
    model_config = ConfigDict(extra="allow")

    requesterName: str = Field(..., min_length=1)
    requesterEmail: EmailStr
    recipientName: str = Field(..., min_length=1)
    bloodGroup: BloodGroup
    recipientDistrict: str = Field(..., min_length=1)
    recipientUpazila: Optional[str] = None
    hospitalName: Optional[str] = None
    fullAddress: Optional[str] = None
    donationDate: Optional[str] = None
    donationTime: Optional[str] = None
    requestMessage: Optional[str] = None
    status: Optional[str] = None

class DonationRequestPatch(BaseModel):
    model_config = ConfigDict(extra="allow")

    requesterName: Optional[str] = None
    recipientName: Optional[str] = None
    bloodGroup: Optional[BloodGroup] = None
    recipientDistrict: Optional[str] = None
    recipientUpazila: Optional[str] = None
    hospitalName: Optional[str] = None
    fullAddress: Optional[str] = None
    donationDate: Optional[str] = None
    donationTime: Optional[str] = None
    requestMessage: Optional[str] = None
    status: Optional[str] = None
    donorName: Optional[str] = None
    donorEmail: Optional[EmailStr] = None

    @field_validator("requesterName", "recipientName", "bloodGroup", "recipientDistrict")
    @classmethod
    def not_blank(cls, value):
        # absent keys are skipped; present ones must keep a value
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("must not be empty")
        return value

class DonorStatusUpdate(BaseModel):
    status: str

# ---------------- Users -----------------

class User(BaseModel):
    """Registration body. Role and status are assigned by the server."""
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address, the user's identity key")
    bloodGroup: BloodGroup
    district: str = Field(..., min_length=1)
    upazila: str = Field(..., min_length=1, description="Sub-district")
    avatar: Optional[str] = Field(None, description="Profile image URL")

class UserProfileUpdate(BaseModel):
    name: Optional[str] = None
    bloodGroup: Optional[BloodGroup] = None
    district: Optional[str] = None
    upazila: Optional[str] = None
    avatar: Optional[str] = None

class UserStatusUpdate(BaseModel):
    status: UserStatus

class UserRoleUpdate(BaseModel):
    role: Role

# ---------------- Blogs -----------------

class Blog(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    thumbnail: str = Field(..., min_length=1, description="Thumbnail image URL")
    status: BlogStatus = "draft"
