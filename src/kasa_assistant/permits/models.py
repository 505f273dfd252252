"""Permit application data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ApplicationStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class SignageType(str, Enum):
    BILLBOARD = "billboard"
    BANNER = "banner"
    NEON_SIGN = "neon_sign"
    LED_DISPLAY = "led_display"
    WALL_MOUNT = "wall_mount"
    VEHICLE_WRAP = "vehicle_wrap"
    OTHER = "other"


class ApplicationForm(BaseModel):
    """A permit application as submitted from the public form."""

    business_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str | None = None
    signage_type: SignageType
    location: str | None = None
    description: str | None = None

    @field_validator("business_name", "email")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("phone", "location", "description")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("signage_type", mode="before")
    @classmethod
    def accept_form_slug(cls, v):
        # The form uses hyphenated slugs ("neon-sign"), the store underscores.
        if isinstance(v, str):
            return v.strip().lower().replace("-", "_")
        return v


class SignageApplication(BaseModel):
    """A stored permit application."""

    id: str | None = Field(default=None, description="Record store primary key")
    application_id: str = Field(..., description="Human-shareable ID, e.g. KASA-LZ3K8F2A-7QX1PB")
    business_name: str
    email: str
    phone: str | None = None
    signage_type: SignageType
    location: str | None = None
    description: str | None = None
    status: ApplicationStatus = ApplicationStatus.PENDING_PAYMENT
    amount_due: float = 0.0
    amount_paid: float = 0.0
    payment_date: datetime | None = None
    issued_date: datetime | None = None
    expiry_date: datetime | None = None
    created_at: datetime | None = None


class ApplicationStats(BaseModel):
    """Counts shown above the admin table."""

    total: int = 0
    pending: int = 0
    paid: int = 0
    approved: int = 0


@dataclass
class CurrentUser:
    """Signed-in user as reported by the identity provider."""

    id: str
    email: str | None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
