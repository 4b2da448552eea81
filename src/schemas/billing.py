from typing import Any

from pydantic import BaseModel, Field


class _CamelCaseModel(BaseModel):
    """Request/response bodies use the browser client's camelCase field names."""

    class Config:
        populate_by_name = True


class CreateCheckoutSessionRequest(_CamelCaseModel):
    price_id: str = Field(..., alias="priceId", min_length=1)
    student_id: str = Field(..., alias="studentId", min_length=1)


class CheckoutSessionResponse(_CamelCaseModel):
    session_id: str = Field(..., alias="sessionId")
    url: str | None = None


class CancelSubscriptionRequest(_CamelCaseModel):
    student_id: str = Field(..., alias="studentId", min_length=1)
    cancel_immediately: bool = Field(False, alias="cancelImmediately")


class PortalSessionResponse(_CamelCaseModel):
    url: str


class PlanChangeRequest(_CamelCaseModel):
    """Body of preview-upgrade and modify-subscription."""

    student_id: str = Field(..., alias="studentId", min_length=1)
    new_price_id: str = Field(..., alias="newPriceId", min_length=1)


class SyncSubscriptionRequest(_CamelCaseModel):
    student_id: str = Field(..., alias="studentId", min_length=1)
    session_id: str | None = Field(None, alias="sessionId")


class SyncedSubscription(_CamelCaseModel):
    id: str
    status: str | None = None
    current_period_start: str | None = Field(None, alias="currentPeriodStart")
    current_period_end: str | None = Field(None, alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(False, alias="cancelAtPeriodEnd")


class SyncSubscriptionResponse(_CamelCaseModel):
    synced: bool = True
    subscription: SyncedSubscription


class WebhookOutcome(BaseModel):
    """Result of processing one webhook delivery."""

    status_code: int = 200
    event_id: str | None = None
    event_type: str | None = None
    duplicate: bool = False
    message: str = "received"

    def response_body(self) -> dict[str, Any]:
        if self.status_code < 300:
            return {"received": True}
        return {"error": self.message}
