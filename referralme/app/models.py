from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserRole(str, Enum):
    seeker = "seeker"
    referrer = "referrer"
    mentor = "mentor"
    admin = "admin"


class ReferralStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    referral_confirmed = "referral_confirmed"
    sent_to_hr = "sent_to_hr"
    interview_scheduled = "interview_scheduled"
    completed = "completed"


class ReferralParty(str, Enum):
    seeker = "seeker"
    referrer = "referrer"


class SessionStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    refunded = "refunded"


class PaymentChannel(str, Enum):
    gateway = "gateway"
    self_attested_transfer = "self_attested_transfer"


class Collection(str, Enum):
    job_postings = "job_postings"
    referral_requests = "referral_requests"
    mentorship_sessions = "mentorship_sessions"
    user_profiles = "user_profiles"


class ChangeEventType(str, Enum):
    job_posting_created = "job_posting_created"
    job_posting_updated = "job_posting_updated"
    referral_created = "referral_created"
    referral_transitioned = "referral_transitioned"
    session_materialized = "session_materialized"
    session_updated = "session_updated"
    profile_updated = "profile_updated"


class OutboxStatus(str, Enum):
    pending = "pending"
    retry_pending = "retry_pending"
    delivered = "delivered"
    failed = "failed"


class WebhookProcessingStatus(str, Enum):
    received = "received"
    processed = "processed"
    failed = "failed"


# Stored documents


class JobPostingRecord(BaseModel):
    id: str
    owner_id: str
    title: str
    company: str
    location: str
    description: str
    requirements: str
    salary: Optional[str] = None
    is_active: bool = True
    version: int = 1
    created_at_utc: datetime
    updated_at_utc: datetime


class ApplicationPayload(BaseModel):
    resume_ref: str = Field(min_length=1, max_length=500)
    cover_letter: Optional[str] = Field(default=None, max_length=5000)
    experience_level: str = Field(min_length=1, max_length=60)
    linkedin_url: Optional[str] = Field(default=None, max_length=300)
    screening_score: Optional[float] = Field(default=None, ge=0, le=100)


class ReferralRequestRecord(BaseModel):
    id: str
    job_posting_id: str
    seeker_id: str
    referrer_id: str
    status: ReferralStatus
    application: ApplicationPayload
    version: int = 1
    created_at_utc: datetime
    updated_at_utc: datetime


class ReferralAuditNote(BaseModel):
    id: str
    request_id: str
    actor_id: str
    from_status: Optional[ReferralStatus]
    to_status: ReferralStatus
    note: Optional[str] = None
    evidence_ref: Optional[str] = None
    created_at_utc: datetime


class MentorshipServiceOffer(BaseModel):
    id: str = Field(min_length=1, max_length=80)
    title: str = Field(min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    duration_minutes: int = Field(ge=15, le=240)
    price: float = Field(gt=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    is_active: bool = True


class UserProfileRecord(BaseModel):
    id: str
    display_name: str
    email: Optional[str] = None
    roles: list[UserRole] = Field(default_factory=list)
    profile_views: int = 0
    upi_id: Optional[str] = None
    payee_name: Optional[str] = None
    services: list[MentorshipServiceOffer] = Field(default_factory=list)
    version: int = 1
    created_at_utc: datetime
    updated_at_utc: datetime

    @property
    def payment_setup_completed(self) -> bool:
        return bool(self.upi_id)


class MentorshipSessionRecord(BaseModel):
    id: str
    mentor_id: str
    mentee_id: str
    service_id: str
    service_title: str
    duration_minutes: int
    price: float
    currency: str
    scheduled_at_utc: datetime
    status: SessionStatus
    payment_status: PaymentStatus
    payment_channel: PaymentChannel
    payment_verified: bool
    payee_acknowledged_at_utc: Optional[datetime] = None
    external_payment_ref: str
    idempotency_key: str
    meeting_ref: str
    rating: Optional[int] = None
    feedback: Optional[str] = None
    version: int = 1
    created_at_utc: datetime
    updated_at_utc: datetime

    @model_validator(mode="after")
    def validate_paid_when_confirmed(self) -> "MentorshipSessionRecord":
        if self.status == SessionStatus.confirmed and self.payment_status != PaymentStatus.paid:
            raise ValueError("a confirmed session must be paid")
        return self


class ChangeEvent(BaseModel):
    sequence: int
    collection: Collection
    event_type: ChangeEventType
    document_id: str
    version: int
    data: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime


class OutboxMessage(BaseModel):
    id: str
    event_type: str
    recipient: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus
    attempts: int
    last_error: Optional[str] = None
    next_attempt_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class WebhookDeliveryRecord(BaseModel):
    id: str
    key: str
    channel: str
    event_id: str
    status: WebhookProcessingStatus
    attempts: int
    last_error: Optional[str]
    created_at_utc: datetime
    updated_at_utc: datetime


# Derived read models


class UserStats(BaseModel):
    user_id: str
    jobs_posted: int = 0
    referrals_given: int = 0
    successful_placements: int = 0
    impact_score: int = 0
    profile_views: int = 0
    achievements: list[str] = Field(default_factory=list)
    total_points: int = 0
    level: int = 1
    points_to_next_level: int = 100
    reputation: str = "newcomer"


class PlatformStats(BaseModel):
    total_users: int
    active_job_postings: int
    total_referral_requests: int
    active_referrers: int
    active_seekers: int
    successful_referrals: int


# API payloads


class JobPostingCreateRequest(BaseModel):
    title: str = Field(min_length=2, max_length=160)
    company: str = Field(min_length=1, max_length=160)
    location: str = Field(min_length=1, max_length=160)
    description: str = Field(min_length=1, max_length=10000)
    requirements: str = Field(default="", max_length=5000)
    salary: Optional[str] = Field(default=None, max_length=80)


class ProfileUpsertRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=120)
    email: Optional[str] = Field(default=None, max_length=254)
    roles: list[UserRole] = Field(default_factory=list)
    upi_id: Optional[str] = Field(default=None, max_length=120)
    payee_name: Optional[str] = Field(default=None, max_length=120)
    services: list[MentorshipServiceOffer] = Field(default_factory=list)

    @field_validator("upi_id")
    @classmethod
    def validate_upi_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        handle, sep, bank = value.partition("@")
        if not sep or not handle or not bank:
            raise ValueError("upi_id must look like name@bank")
        return value


class ReferralSubmitRequest(BaseModel):
    job_posting_id: str
    application: ApplicationPayload


class ReferralTransitionRequest(BaseModel):
    target_status: ReferralStatus
    note: Optional[str] = Field(default=None, max_length=2000)
    evidence_ref: Optional[str] = Field(default=None, max_length=500)
    expected_status: Optional[ReferralStatus] = None


class MentorshipQuoteRequest(BaseModel):
    mentor_id: str
    service_id: str
    scheduled_at_utc: datetime

    @field_validator("scheduled_at_utc")
    @classmethod
    def normalize_scheduled_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class QuoteResponse(BaseModel):
    mentor_id: str
    mentee_id: str
    service_id: str
    service_title: str
    duration_minutes: int
    scheduled_at_utc: datetime
    amount: float
    amount_minor: int
    currency: str


class GatewayOrderResponse(BaseModel):
    order_id: str
    key_id: str
    amount_minor: int
    currency: str
    receipt: str


class GatewayVerifyRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=120)
    payment_id: str = Field(min_length=1, max_length=120)
    signature: str = Field(min_length=1, max_length=256)


class SelfAttestedStartResponse(BaseModel):
    attempt_id: str
    payment_link: str
    payee_id: str
    payee_name: str
    amount: float
    currency: str
    note: str
    expires_at_utc: datetime


class SelfAttestedConfirmRequest(BaseModel):
    transaction_id: str = Field(min_length=4, max_length=120)


class BookingResponse(BaseModel):
    session: MentorshipSessionRecord
    duplicate: bool = False


class SessionRatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = Field(default=None, max_length=2000)


class GatewayWebhookEvent(BaseModel):
    event_id: str = Field(min_length=4, max_length=120)
    event: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookEventResponse(BaseModel):
    status: str
    detail: Optional[str] = None


class DispatchResponse(BaseModel):
    delivered: int
    retry_pending: int
    failed: int
