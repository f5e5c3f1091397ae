# Pydantic models (request/response DTOs and store-boundary records).
# Rows leaving the database are parsed into these so call sites never touch loosely-typed dicts.
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator, EmailStr
from typing import Literal, Optional, Dict, Any
from datetime import date, datetime, timezone


def _as_utc(v: Any) -> Any:
    # SQLite drops tzinfo on write, so everything is stored and compared as UTC
    if not isinstance(v, datetime):
        return v
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


PriceType = Literal["per_hour", "per_day"]
BookingStatus = Literal["pending", "approved", "rejected", "cancelled"]


# Equipment
# Common listing fields shared by create/read
class EquipmentBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    equipment_type: str = Field(..., min_length=1, max_length=100)
    rental_price: float = Field(..., gt=0)
    price_type: PriceType = "per_day"
    location: Optional[str] = Field(None, max_length=255)
    availability_start: datetime
    availability_end: datetime

    @field_validator("name", "equipment_type", "location", mode="before")
    @classmethod
    def strip_text(cls, v):
        # Trim surrounding whitespace before validation
        if isinstance(v, str):
            v = v.strip()
        return v

    @field_validator("availability_start", "availability_end", mode="after")
    @classmethod
    def normalize_tz(cls, v: datetime) -> datetime:
        return _as_utc(v)


# Payload for listing new equipment
class EquipmentCreate(EquipmentBase):
    @model_validator(mode="after")
    def check_window(self) -> "EquipmentCreate":
        if self.availability_end < self.availability_start:
            raise ValueError("availability_end must not be before availability_start")
        return self


# Response shape when reading a listing
class EquipmentRead(EquipmentBase):
    id: int
    owner_id: int
    status: str

    model_config = ConfigDict(from_attributes=True)


# Bookings
# Request payload for booking a listing; hours is only used for per_hour equipment
class BookingCreate(BaseModel):
    start_date: date
    end_date: date
    hours: Optional[float] = None


# API response for a booking record
class BookingRead(BaseModel):
    id: int
    equipment_id: int
    renter_id: int
    start_date: date
    end_date: date
    total_amount: float
    status: BookingStatus

    model_config = ConfigDict(from_attributes=True)


# Notifications
class NotificationRead(BaseModel):
    id: int
    user_id: int
    title: str
    body: str
    read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", mode="after")
    @classmethod
    def normalize_tz(cls, v: datetime) -> datetime:
        return _as_utc(v)


# Authentication and user models

# Request payload for user registration
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = Field(None, max_length=255)

    # Normalize email input to lowercase without surrounding whitespace
    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# API response for a user record
class UserRead(BaseModel):
    id: int
    email: EmailStr
    full_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# Request payload for logging in
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# OAuth2-style token response bundled with the current user profile
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


# Messages
# A persisted chat message (server-assigned id and timestamp)
class MessageRead(BaseModel):
    id: int
    equipment_id: int
    sender_id: int
    recipient_id: int
    message: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", mode="after")
    @classmethod
    def normalize_tz(cls, v: datetime) -> datetime:
        return _as_utc(v)


# Request payload for sending a message over REST
class MessageCreate(BaseModel):
    recipient_id: int = Field(..., ge=1)
    message: str = Field(..., min_length=1, max_length=1000)

    # Trim surrounding whitespace before validation
    @field_validator("message", mode="before")
    @classmethod
    def normalize_text(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip()
        return v


# Unsent message as held by the chat engine; what gets inserted on send/retry
class MessageDraft(BaseModel):
    equipment_id: int
    sender_id: int
    recipient_id: int
    message: str


# Realtime
# One row change pushed on an equipment channel
class ChangeEvent(BaseModel):
    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    table: Literal["equipment_messages", "equipment_bookings"]
    equipment_id: int
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    # Process that published the event; used to skip our own events echoed back by Redis
    origin: Optional[str] = None
