from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class PricingInfo(BaseModel):
    """Preço exibido para a região do usuário."""
    currency: str
    amount: float
    symbol: str
    provider: str


class PricingResponse(BaseModel):
    success: bool = True
    pricing: PricingInfo


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method: Optional[str] = Field(None, alias="paymentMethod")
    phone_number: Optional[str] = Field(None, alias="phoneNumber")


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx_ref: Optional[str] = Field(None, alias="txRef")


class ManualUpgradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")


class SubscriptionStatusResponse(BaseModel):
    success: bool = True
    status: str  # none, pending, active, cancelled, expired
    plan: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    renewal_date: Optional[datetime] = None
    provider: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    """Resposta ao cancelar assinatura."""
    success: bool = True
    message: str
    plan: str
    status: Literal["cancelled"] = "cancelled"


class PaymentEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    amount: Decimal
    currency: str
    date: datetime
    reference: Optional[str] = None
    provider: str
    status: str


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    payments: List[PaymentEntry]


class LimitsResponse(BaseModel):
    plan: str
    project_ideas_left: int
    collaboration_requests_left: int
    plan_expiry_date: Optional[datetime] = None
    pricing_enabled: bool
