from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

Frequency = Literal["daily", "weekly", "monthly", "yearly"]
SubscriptionStatus = Literal["active", "expired", "canceled"]
Currency = Literal["USD", "EUR", "DOP"]
Category = Literal[
    "sports",
    "news",
    "entertainment",
    "lifestyle",
    "technology",
    "finance",
    "politics",
    "other",
]
RunStatus = Literal["awaiting_start", "running", "sleeping", "completed", "aborted"]
AbortReason = Literal["subscription_missing", "not_active", "renewal_passed", "renewal_rescheduled"]
FireStatus = Literal["pending", "sent", "failed"]


class SubscriptionCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    price: float = Field(ge=0)
    currency: Currency
    frequency: Frequency
    category: Category
    payment_method: str = Field(min_length=1, max_length=128)
    status: SubscriptionStatus = "active"
    start_date: date
    renewal_date: date | None = None
    owner_id: str = Field(min_length=1, max_length=128)
    owner_email: str = Field(min_length=3, max_length=256)
    owner_name: str | None = Field(default=None, max_length=256)

    @field_validator("name", "payment_method", "owner_id", "owner_email")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("text fields cannot be blank")
        return normalized

    @model_validator(mode="after")
    def _validate_dates(self) -> SubscriptionCreateRequest:
        if self.renewal_date is not None and self.renewal_date <= self.start_date:
            raise ValueError("renewal_date must be after start_date")
        return self


class SubscriptionUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=100)
    price: float | None = Field(default=None, ge=0)
    currency: Currency | None = None
    frequency: Frequency | None = None
    category: Category | None = None
    payment_method: str | None = Field(default=None, min_length=1, max_length=128)
    status: SubscriptionStatus | None = None
    start_date: date | None = None
    renewal_date: date | None = None
    owner_email: str | None = Field(default=None, min_length=3, max_length=256)
    owner_name: str | None = Field(default=None, max_length=256)

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class SubscriptionRecord(BaseModel):
    subscription_id: str
    name: str
    price: float
    currency: Currency
    frequency: Frequency
    category: Category
    payment_method: str
    status: SubscriptionStatus
    start_date: date
    renewal_date: date
    owner_id: str
    owner_email: str
    owner_name: str | None = None
    created_at: datetime
    updated_at: datetime


class SubscriptionCreateResponse(BaseModel):
    subscription: SubscriptionRecord
    workflow_run_id: str | None = None


class ReminderJobResponse(BaseModel):
    subscription_id: str
    workflow_run_id: str


class ReminderTriggerRequest(BaseModel):
    subscription_id: str = Field(
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("subscription_id", "subscriptionId"),
    )

    @field_validator("subscription_id")
    @classmethod
    def _normalize_subscription_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("subscription_id cannot be blank")
        return normalized


class RunOutcomeResponse(BaseModel):
    run_id: str | None
    subscription_id: str
    status: RunStatus
    abort_reason: AbortReason | None = None
    wake_at: datetime | None = None
    next_checkpoint_index: int = 0
    fired_labels: list[str] = Field(default_factory=list)
    failed_labels: list[str] = Field(default_factory=list)


class CheckpointFireView(BaseModel):
    idempotency_key: str
    label: str
    fire_at: datetime
    fired_at: datetime
    status: FireStatus
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ReminderRunDetailResponse(BaseModel):
    run_id: str
    subscription_id: str
    renewal_date: date
    status: RunStatus
    abort_reason: AbortReason | None = None
    next_checkpoint_index: int
    wake_at: datetime | None = None
    fired_count: int
    failed_count: int
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None
    fires: list[CheckpointFireView] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    trigger_configured: bool
    pending_wakeups: int
