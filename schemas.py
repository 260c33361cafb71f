"""
Database Schemas for the PG/hostel rental marketplace

Each stored Pydantic model maps to one MongoDB collection (see COLLECTIONS).
Documents are addressed by generated string ids: Firebase UIDs for users and
role profiles, ObjectId hex strings for everything else. Field names are
stored exactly as declared here.
"""
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, model_validator

COLLECTIONS = {
    "user": "users",
    "tenant": "tenants",
    "owner": "owners",
    "listing": "listings",
    "booking": "bookings",
    "inquiry": "inquiries",
    "review": "reviews",
    "support_ticket": "support_tickets",
}

Role = Literal["tenant", "owner", "admin"]
RoomType = Literal["single", "shared", "dormitory"]
Amenity = Literal[
    "wifi", "ac", "parking", "laundry", "meals", "gym", "security",
    "power_backup", "hot_water", "refrigerator", "tv", "study_room",
]
BookingStatus = Literal["pending", "confirmed", "active", "completed", "cancelled"]
TicketCategory = Literal["technical", "billing", "general", "abuse"]
TicketPriority = Literal["low", "medium", "high"]
TicketStatus = Literal["open", "in_progress", "resolved"]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Users and role profiles
# -----------------------------

class User(BaseModel):
    id: str = Field(..., description="Firebase Auth UID")
    email: str
    name: str
    phone: Optional[str] = None
    role: Role
    profile_image_url: Optional[str] = None
    is_verified: bool = False
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class TenantPreferences(BaseModel):
    max_rent: Optional[float] = None
    preferred_locations: List[str] = []
    required_amenities: List[Amenity] = []
    room_type: Optional[RoomType] = None


class TenantProfile(BaseModel):
    role: Literal["tenant"] = "tenant"
    user_id: str
    preferences: Optional[TenantPreferences] = None
    favorite_listings: List[str] = []
    booking_history: List[str] = []


class OwnerProfile(BaseModel):
    role: Literal["owner"] = "owner"
    user_id: str
    business_name: Optional[str] = None
    license_number: Optional[str] = None
    is_license_verified: bool = False
    properties: List[str] = []
    total_bookings: int = 0
    rating: float = 0.0


class AdminProfile(BaseModel):
    role: Literal["admin"] = "admin"
    user_id: str


Profile = Annotated[Union[TenantProfile, OwnerProfile, AdminProfile], Field(discriminator="role")]


# -----------------------------
# Listings
# -----------------------------

class Address(BaseModel):
    street: str
    city: str
    state: str
    pincode: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def full_address(self) -> str:
        return f"{self.street}, {self.city}, {self.state} - {self.pincode}"


class ListingIn(BaseModel):
    """Owner-editable listing fields, used for both create and full update."""
    title: str = Field(..., min_length=1)
    description: str = ""
    address: Address
    rent: float = Field(..., ge=0)
    security_deposit: float = Field(0, ge=0)
    room_type: RoomType
    total_rooms: int = Field(..., ge=0)
    available_rooms: Optional[int] = Field(None, ge=0, description="Read on create only (defaults to total_rooms); bookings own the counter afterwards")
    amenities: List[Amenity] = []
    rules: List[str] = []
    images: List[str] = []
    is_active: bool = True


class Listing(BaseModel):
    id: str
    owner_id: str
    title: str
    description: str = ""
    address: Address
    rent: float
    security_deposit: float = 0
    room_type: RoomType
    total_rooms: int
    available_rooms: int
    amenities: List[Amenity] = []
    rules: List[str] = []
    images: List[str] = []
    is_approved: bool = False
    is_active: bool = True
    rating: float = 0.0
    review_count: int = 0
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    @property
    def is_visible(self) -> bool:
        return self.is_approved and self.is_active


class ListingFilters(BaseModel):
    max_rent: Optional[float] = None
    room_type: Optional[RoomType] = None
    city: Optional[str] = None
    amenities: List[Amenity] = []


# -----------------------------
# Bookings, inquiries, reviews
# -----------------------------

class BookingCreate(BaseModel):
    listing_id: str
    check_in_date: datetime
    check_out_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_out_after_check_in(self):
        if self.check_out_date is not None and self.check_out_date <= self.check_in_date:
            raise ValueError("check_out_date must be after check_in_date")
        return self


class Booking(BaseModel):
    id: str
    tenant_id: str
    listing_id: str
    owner_id: str
    check_in_date: datetime
    check_out_date: Optional[datetime] = None
    monthly_rent: float
    security_deposit: float
    status: BookingStatus = "pending"
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class InquiryCreate(BaseModel):
    listing_id: str
    message: str = Field(..., min_length=1)


class Inquiry(BaseModel):
    id: str
    tenant_id: str
    listing_id: str
    owner_id: str
    message: str
    is_read: bool = False
    response: Optional[str] = None
    created_at: datetime = Field(default_factory=now_utc)
    responded_at: Optional[datetime] = None


class ReviewCreate(BaseModel):
    listing_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


class Review(BaseModel):
    id: str
    tenant_id: str
    listing_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: datetime = Field(default_factory=now_utc)


# -----------------------------
# Support tickets
# -----------------------------

class SupportTicketCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: TicketCategory = "general"
    priority: TicketPriority = "medium"


class SupportTicket(BaseModel):
    id: str
    title: str
    description: str
    category: TicketCategory
    priority: TicketPriority
    status: TicketStatus = "open"
    user_id: str
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


# -----------------------------
# Auth payloads
# -----------------------------

class SignUpRequest(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    role: Role = "tenant"


class SignInRequest(BaseModel):
    email: EmailStr
    password: str


class PasswordResetRequest(BaseModel):
    email: EmailStr


class ProfileUpdate(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
