"""Shared Pydantic response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Billing schemas
# ---------------------------------------------------------------------------


class SubscriptionStatusResponse(BaseModel):
    """Poll response consumed by the dashboard (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    subscribed: bool
    status: str
    plan: str | None = None
    trial_end: str | None = Field(default=None, alias="trialEnd")
    subscription_end: str | None = Field(default=None, alias="subscriptionEnd")
    cancel_at_period_end: bool = Field(default=False, alias="cancelAtPeriodEnd")


class EntitlementResponse(BaseModel):
    """Feature-gate decision for the authenticated tenant."""

    tenant_id: str
    phase: str
    label: str
    plan: str | None = None
    trial_days_left: int = 0
    past_grace: bool = False
    can_access: bool
    cancel_at_period_end: bool = False


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the billing provider."""

    status: str
    reason: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    tenant_id: str | None = None
    phase: str | None = None


# ---------------------------------------------------------------------------
# Retention schemas
# ---------------------------------------------------------------------------


class RetentionEventResponse(BaseModel):
    """One recorded retention send attempt."""

    step: int
    sent_at: datetime
    succeeded: bool
    error_detail: str | None = None
    is_manual: bool = False


class RetentionTenantResponse(BaseModel):
    """Retention progress for one trial tenant."""

    tenant_id: str
    business_name: str | None = None
    phone: str | None = None
    sms_consent: bool = False
    activated: bool = False
    trial_start: datetime | None = None
    trial_ends_at: datetime | None = None
    days_in_trial: int = 0
    retention_step: int = 0
    last_sent_at: datetime | None = None
    events: list[RetentionEventResponse] = Field(default_factory=list)


class RetentionListResponse(BaseModel):
    """Response for ``GET /admin/retention``."""

    tenants: list[RetentionTenantResponse]
    total: int


class RetentionRunResponse(BaseModel):
    """Summary of one scheduler pass."""

    disabled: bool = False
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class RetentionSendRequest(BaseModel):
    """Request body for a manual send of a specific step."""

    step: int = Field(..., ge=1, le=3, description="Retention step number to send.")


class RetentionSendResponse(BaseModel):
    """Outcome of a manual retention send."""

    tenant_id: str
    step: int
    succeeded: bool
    error: str | None = None


class RetentionResetResponse(BaseModel):
    """Outcome of clearing a tenant's retention history."""

    tenant_id: str
    deleted: int


# ---------------------------------------------------------------------------
# Email preference schemas
# ---------------------------------------------------------------------------


class EmailPreferenceResponse(BaseModel):
    """The caller's lifecycle email opt-out state."""

    tenant_id: str
    unsubscribed: bool
