from pydantic import BaseModel, Field, ConfigDict, field_validator
from enum import Enum
from typing import Optional, Any


class PaymentStatus(str, Enum):
    """Payment statuses reported by the gateway."""
    APPROVED = "approved"
    PENDING = "pending"
    IN_PROCESS = "in_process"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"
    IN_MEDIATION = "in_mediation"


PAYMENT_NOTIFICATION_ACTIONS = ("payment.created", "payment.updated")


def select_redirect_url(
    init_point: Optional[str],
    sandbox_init_point: Optional[str],
    environment: str,
) -> Optional[str]:
    """Development prefers the sandbox URL, every other environment the production one."""
    if environment == "development":
        return sandbox_init_point or init_point
    return init_point or sandbox_init_point


class PaymentPreference(BaseModel):
    """A checkout preference created on the gateway."""
    id: str
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None

    def redirect_url(self, environment: str) -> Optional[str]:
        return select_redirect_url(self.init_point, self.sandbox_init_point, environment)


class PaymentInfo(BaseModel):
    """Payment data handed back to the customer after an order is created."""
    id: str
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None
    redirect_url: str

    @classmethod
    def from_preference(cls, preference: PaymentPreference, environment: str) -> "PaymentInfo":
        return cls(
            id=preference.id,
            init_point=preference.init_point,
            sandbox_init_point=preference.sandbox_init_point,
            redirect_url=preference.redirect_url(environment),
        )


class PaymentDetails(BaseModel):
    id: str
    status: str
    status_detail: Optional[str] = None
    date_approved: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    transaction_amount: Optional[float] = None
    external_reference: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @property
    def is_approved(self) -> bool:
        return self.status == PaymentStatus.APPROVED.value

    def to_dict(self):
        return self.model_dump()


class NotificationData(BaseModel):
    id: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)


class PaymentNotification(BaseModel):
    """Body of a gateway webhook call."""
    action: Optional[str] = None
    type: Optional[str] = None
    data: Optional[NotificationData] = None

    model_config = ConfigDict(extra="allow")

    @property
    def is_payment(self) -> bool:
        return self.action in PAYMENT_NOTIFICATION_ACTIONS or self.type == "payment"

    @property
    def payment_id(self) -> Optional[str]:
        return self.data.id if self.data else None


class WebhookResult(BaseModel):
    message: str
    processed: bool = False
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    emails_sent: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class GatewayStatus(BaseModel):
    is_configured: bool
    is_production: bool
    environment: str
    token_type: Optional[str] = None
