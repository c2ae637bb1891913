"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ============== Generation Schemas ==============


class GenerationRequest(BaseModel):
    """Request to generate media for a subject."""

    subject_id: str = Field(..., min_length=1, max_length=36, description="Subject to generate from")


class GenerationStartResponse(BaseModel):
    """Outcome of a generation request; refusals are not HTTP errors."""

    success: bool
    subject_id: str
    kind: str
    code: Optional[str] = None
    reason: Optional[str] = None
    queue_id: Optional[int] = None
    remaining: Optional[int] = None


class OutputResponse(BaseModel):
    """One output of a generation task."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    output_index: int
    status: str
    result_ref: Optional[str] = None
    title: Optional[str] = None
    duration: Optional[float] = None
    result_metadata: Optional[dict] = None
    error_message: Optional[str] = None
    created_at: int
    updated_at: int


class TaskResponse(BaseModel):
    """A generation task and its outputs."""

    task_id: str
    kind: str
    subject_id: str
    output_count: int
    credit_cost: int
    created_at: int
    outputs: list[OutputResponse] = []


class SubjectResponse(BaseModel):
    """Subject with its current primary results."""

    id: str
    title: Optional[str] = None
    primary_audio_output_id: Optional[str] = None
    primary_video_output_id: Optional[str] = None
    primary_audio: Optional[OutputResponse] = None
    primary_video: Optional[OutputResponse] = None
    generation_in_progress: bool = False


# ============== Usage & Plan Schemas ==============


class UsageResponse(BaseModel):
    """Stored credit counters of the caller's subscription."""

    subscription_id: str
    tier: str
    status: str
    consumed: int
    limit: int
    remaining: int
    period_start: int
    period_end: int


class PlanInfo(BaseModel):
    """One subscription tier."""

    tier: str
    credit_limit: int
    period_duration_ms: int
    price: float
    description: str = ""


# ============== Webhook Schemas ==============


class BillingEvent(BaseModel):
    """Billing-provider subscription event. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    event_type: Optional[str] = Field(
        None, validation_alias=AliasChoices("type", "event_type", "eventType")
    )
    app_user_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("app_user_id", "appUserId")
    )
    product_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("product_id", "productId")
    )
    store: Optional[str] = None
    expiration_at_ms: Optional[Union[int, str]] = Field(
        None, validation_alias=AliasChoices("expiration_at_ms", "expirationAtMs")
    )
    entitlement_ids: Optional[list[str]] = Field(
        None, validation_alias=AliasChoices("entitlement_ids", "entitlementIds")
    )
    entitlements: Optional[dict[str, Any]] = None

    def entitlement_id_list(self) -> list[str]:
        if self.entitlement_ids:
            return list(self.entitlement_ids)
        if self.entitlements:
            return list(self.entitlements.keys())
        return []

    def expiration_ms(self) -> Optional[int]:
        """Expiration as epoch ms; the provider sends either a number or a string."""
        if self.expiration_at_ms is None:
            return None
        try:
            return int(self.expiration_at_ms)
        except (TypeError, ValueError):
            return None


class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook senders."""

    status: Literal["ok", "ignored", "failure_handled"]
    reason: Optional[str] = None


# ============== User & API Key Schemas ==============


class UserCreate(BaseModel):
    """Request to provision a user with a free subscription and an API key."""

    external_id: Optional[str] = Field(None, max_length=255)
    key_name: str = Field("default", min_length=1, max_length=100)


class UserCreateResponse(BaseModel):
    """Provisioned user (only time the full key is shown)."""

    user_id: str
    subscription_id: str
    tier: str
    api_key: str
    key_prefix: str


class ApiKeyCreate(BaseModel):
    """Request to create a new API key."""

    name: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1, max_length=36)
    scopes: list[Literal["music", "video"]] = Field(default=["music", "video"])
    expires_in_days: Optional[int] = Field(None, ge=1, le=365)


class ApiKeyResponse(BaseModel):
    """Response after creating an API key (only time full key is shown)."""

    id: str
    api_key: str  # Full key, shown only once
    key_prefix: str
    name: str
    user_id: str
    scopes: list[str]
    created_at: datetime
    expires_at: Optional[datetime] = None


class ApiKeyInfo(BaseModel):
    """API key info (without full key)."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    key_prefix: str
    name: str
    user_id: str
    scopes: list[str]
    is_active: bool
    created_at: datetime
    expires_at: Optional[datetime] = None


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str
    queues: dict[str, dict[str, int]] = {}


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
