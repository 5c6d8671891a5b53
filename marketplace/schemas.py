import enum
from typing import Optional

from pydantic import BaseModel, Field


class PaymentIntentStatus(str, enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
    RETRY_PAYMENT = "RETRY_PAYMENT"
    FAILED = "FAILED"


class PaymentIntentData(BaseModel):
    client_secret: Optional[str] = None
    payment_intent_id: Optional[str] = None


class PaymentIntentResult(BaseModel):
    """Outcome of a create-payment-intent call. Never persisted."""

    success: bool
    status: PaymentIntentStatus
    message: str = ""
    data: PaymentIntentData = Field(default_factory=PaymentIntentData)


class ConfirmationResult(BaseModel):
    # Raw processor status, e.g. "succeeded" or "requires_action"
    status: Optional[str] = None
    id: Optional[str] = None

    @property
    def succeeded(self):
        return self.status == "succeeded"


class OperationResult(BaseModel):
    success: bool
    message: str = ""


class JobResult(BaseModel):
    success: bool
    count: int = 0
