import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9](:[0-5][0-9])?$"


def normalize_time(value):
    """HH:MM or H:MM[:SS] -> HH:MM:SS"""
    if value is None:
        return None
    parts = [int(p) for p in value.split(":")]
    if len(parts) == 2:
        parts.append(0)
    return "{:02d}:{:02d}:{:02d}".format(*parts)


class DocumentLink(BaseModel):
    doc_type: str = Field(min_length=1)
    file_url: str = Field(min_length=1)


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str = Field(pattern=r"^[0-9]{10}$")
    password: str = Field(min_length=6)
    user_type: Literal["driver", "passenger", "both", "admin"] = "passenger"
    documents: Optional[List[DocumentLink]] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RideCreate(BaseModel):
    source: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    date: dt.date
    time: str = Field(pattern=TIME_PATTERN)
    total_seats: int = Field(ge=1)
    distance_km: float = Field(ge=0)
    vehicle_id: Optional[int] = None

    @field_validator("source", "destination")
    @classmethod
    def not_blank(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class RideUpdate(BaseModel):
    source: Optional[str] = None
    destination: Optional[str] = None
    date: Optional[dt.date] = None
    time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    total_seats: Optional[int] = Field(default=None, ge=1)
    distance_km: Optional[float] = Field(default=None, ge=0)


class RideStatusUpdate(BaseModel):
    status: Literal["scheduled", "ongoing", "completed", "cancelled"]


class ScheduleCreate(BaseModel):
    cron_expr: str = Field(min_length=1, max_length=64)
    active: bool = True


class WaypointCreate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    order_index: int = 0


class BookingCreate(BaseModel):
    ride_id: int
    seats_booked: int = Field(ge=1)
    notes: Optional[str] = Field(default=None, max_length=500)


class BookingStatusUpdate(BaseModel):
    status: Literal["in_progress", "completed"]


class PaymentRequest(BaseModel):
    booking_id: int
    payment_method: Literal["cash", "card", "upi", "wallet"]


class CashInitRequest(BaseModel):
    booking_id: int


class WalletTopup(BaseModel):
    amount: float = Field(ge=10)


class FeedbackCreate(BaseModel):
    ride_id: int
    rating: int = Field(ge=1, le=5)
    comments: Optional[str] = None

    @field_validator("comments")
    @classmethod
    def strip_comments(cls, v):
        if v is None:
            return None
        return v.strip() or None


class VehicleCreate(BaseModel):
    model: str = Field(min_length=1)
    license_plate: str = Field(min_length=1, max_length=20)
    capacity: int = Field(gt=0)
    color: Optional[str] = None
    vehicle_image_url: Optional[str] = None


class VehicleVerification(BaseModel):
    verification_status: Literal["approved", "rejected"]


class DocumentReview(BaseModel):
    status: Literal["approved", "rejected"]
    rejection_reason: Optional[str] = None


class SosRequest(BaseModel):
    details: Optional[str] = Field(default=None, max_length=1000)
    passenger_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    passenger_lon: Optional[float] = Field(default=None, ge=-180, le=180)


class UnsafeReport(BaseModel):
    message: Optional[str] = Field(default=None, max_length=1000)


class EmergencyContactUpdate(BaseModel):
    emergency_contact_name: Optional[str] = Field(default=None, max_length=100)
    emergency_contact_phone: Optional[str] = Field(default=None, pattern=r"^\+?[0-9]{10,15}$")
    emergency_contact_email: Optional[EmailStr] = None


class AvailabilityUpdate(BaseModel):
    is_available: bool


class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
