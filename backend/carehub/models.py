from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field

StageStatus = Literal["pending", "submitted", "approved", "rejected"]
VerificationStatus = Literal["pending", "submitted", "approved", "rejected", "blacklisted"]
BookingStatus = Literal["pending", "accepted", "in-progress", "completed", "cancelled"]
Role = Literal["client", "provider", "admin"]

STAGE_IDS = (1, 2, 3, 4)
STAGE_NAMES = {
    1: "identity_contact",
    2: "documents",
    3: "skills_experience",
    4: "behavioral",
}


class Identity(BaseModel):
    user_id: str
    role: Role = "client"


class Provider(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    email: str = ""
    phone: str = ""
    address: str = ""
    gender: Optional[str] = None
    specialty: str = ""
    skills: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    hourly_rate: Decimal = Decimal("0")
    experience_years: int = 0
    experience_details: str = ""
    verified: bool = False
    verification_status: VerificationStatus = "pending"
    available: bool = False
    rating: float = 0.0
    total_reviews: int = 0
    total_jobs: int = 0
    total_earnings: Decimal = Decimal("0")
    verified_at: Optional[datetime] = None
    blacklist_reason: Optional[str] = None
    blacklisted_at: Optional[datetime] = None
    blacklisted_by: Optional[str] = None
    unapproved_at: Optional[datetime] = None
    unapproved_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def rating_display(self) -> str:
        return f"{self.rating:.1f}"

    @property
    def is_blacklisted(self) -> bool:
        return self.verification_status == "blacklisted"


class StageReview(BaseModel):
    action: Literal["approve", "reject"]
    notes: str = ""
    reviewer_id: str
    reviewed_at: datetime


class VerificationRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    provider_id: str
    provider_name: str = ""
    email_verified: bool = False
    mobile_verified: bool = False
    stages: Dict[int, StageStatus] = Field(default_factory=lambda: {stage: "pending" for stage in STAGE_IDS})
    stage_data: Dict[int, Dict[str, Any]] = Field(default_factory=dict)
    review_notes: Dict[int, StageReview] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    def all_approved(self) -> bool:
        return all(self.stages.get(stage) == "approved" for stage in STAGE_IDS)

    def any_rejected(self) -> bool:
        return any(self.stages.get(stage) == "rejected" for stage in STAGE_IDS)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def awaiting_review(self) -> bool:
        return self.has_submitted()

    def has_submitted(self) -> bool:
        return any(self.stages.get(stage) == "submitted" for stage in STAGE_IDS)


class StatusChange(BaseModel):
    from_status: str
    to_status: str
    actor_id: str
    note: str = ""
    at: datetime


class ServiceRequest(BaseModel):
    """A client booking. Older records used ``rating``/``userRating`` and
    ``review``/``userReview`` interchangeably; both load into the same field."""

    model_config = ConfigDict(extra="ignore")

    id: str
    client_id: str
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    service_type: str
    service_title: str = ""
    status: BookingStatus = "pending"
    scheduled_date: str = ""
    scheduled_time: str = ""
    location: str = ""
    additional_details: str = ""
    duration_hours: Optional[float] = None
    estimated_cost: Decimal = Decimal("0")
    user_rating: Optional[int] = Field(
        default=None,
        ge=1,
        le=5,
        validation_alias=AliasChoices("user_rating", "userRating", "rating"),
    )
    user_review: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("user_review", "userReview", "review"),
    )
    rated_at: Optional[datetime] = None
    last_edited_at: Optional[datetime] = None
    review_hidden: bool = False
    review_hidden_at: Optional[datetime] = None
    review_hidden_by: Optional[str] = None
    review_hidden_reason: Optional[str] = None
    provider_notes: str = ""
    notes_updated_at: Optional[datetime] = None
    payment_status: Literal["unpaid", "paid"] = "unpaid"
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_provider_id: Optional[str] = None
    removed_provider_id: Optional[str] = None
    previous_provider_id: Optional[str] = None
    reassigned_at: Optional[datetime] = None
    reassigned_by: Optional[str] = None
    history: list[StatusChange] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_review(self) -> bool:
        return self.user_rating is not None


class WalletTransaction(BaseModel):
    id: str
    type: Literal["credit", "debit"]
    amount: Decimal
    resulting_balance: Decimal
    description: str = ""
    timestamp: datetime
    refs: Dict[str, str] = Field(default_factory=dict)


class Wallet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str
    balance: Decimal = Decimal("0.00")
    transactions: list[WalletTransaction] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class Review(BaseModel):
    id: str
    booking_id: str
    rating: int
    review: str = ""
    client_id: str
    provider_id: Optional[str] = None
    service_type: str
    rated_at: Optional[datetime] = None
    last_edited_at: Optional[datetime] = None
    hidden: bool = False
    hidden_reason: Optional[str] = None


class ProviderSignupRequest(BaseModel):
    name: str
    email: str = ""
    phone: str = ""
    address: str = ""
    gender: Optional[str] = None
    specialty: str = ""
    skills: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    hourly_rate: Decimal = Decimal("0")
    experience_years: int = 0
    experience_details: str = ""
    email_verified: bool = False
    mobile_verified: bool = False
    id_card_number: str = ""
    id_card_copy: str = ""
    profile_photo: str = ""


class StageSubmitRequest(BaseModel):
    stage: int
    data: Dict[str, Any] = Field(default_factory=dict)


class StageReviewRequest(BaseModel):
    provider_id: str
    stage: int
    action: Literal["approve", "reject"]
    notes: str = ""


class ContactCodeRequest(BaseModel):
    channel: Literal["email", "mobile"]


class ContactCodeConfirmRequest(BaseModel):
    channel: Literal["email", "mobile"]
    code: str


class ContactCodeIssued(BaseModel):
    channel: Literal["email", "mobile"]
    code: str
    expires_at: datetime


class ProviderAdminRequest(BaseModel):
    provider_id: str


class BlacklistRequest(BaseModel):
    provider_id: str
    reason: str = ""


class AvailabilityRequest(BaseModel):
    available: bool


class ServiceRequestCreate(BaseModel):
    service_type: str
    service_title: str = ""
    scheduled_date: str = ""
    scheduled_time: str = ""
    location: str = ""
    additional_details: str = ""
    duration_hours: Optional[float] = None
    estimated_cost: Decimal = Decimal("0")


class JobStatusUpdateRequest(BaseModel):
    status: Literal["in-progress", "completed"]
    notes: Optional[str] = None


class JobNotesRequest(BaseModel):
    notes: str


class RatingRequest(BaseModel):
    rating: int
    review: str = ""


class ReviewHideRequest(BaseModel):
    reason: str = ""


class WalletTopUpRequest(BaseModel):
    amount: Decimal
    order_id: str
    payment_id: str
    signature: str


class WalletWithdrawRequest(BaseModel):
    amount: Decimal
    bank_account: str = ""
    account_holder: str = ""


class WalletTransferRequest(BaseModel):
    to_account_id: str
    amount: Decimal
    description: str = ""


class WalletTransferResult(BaseModel):
    source: Wallet
    destination: Wallet


class StageReviewResult(BaseModel):
    verification: VerificationRecord
    provider: Provider


class SettlementResult(BaseModel):
    request: ServiceRequest
    wallet: Wallet
