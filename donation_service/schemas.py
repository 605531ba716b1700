from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------- requests

class DonorInfo(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    name: str = ""
    email: str = ""
    phone: Optional[str] = None


class DonationRequest(CamelModel):
    amount: Decimal
    donor_info: DonorInfo
    donation_type: Optional[str] = None


class VerifyRequest(CamelModel):
    payment_id: str
    order_id: Optional[str] = None
    donation_id: Optional[str] = None
    signature: Optional[str] = None


class CancelRequest(CamelModel):
    reason: Optional[str] = None


class RefundRequest(CamelModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


# --------------------------------------------------------------- responses

class DonationOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    amount: Decimal
    currency: str
    donor_info: Dict[str, Any]
    donation_type: str
    status: str
    order_id: str
    payment_id: Optional[str] = None
    payment_details: Dict[str, Any] = {}
    refund_details: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer("amount")
    def _amount(self, value):
        return float(value)


class OrderOut(CamelModel):
    order_id: str
    amount_minor_unit: int
    currency: str
    status: str


class DonationCreated(CamelModel):
    success: bool = True
    donation: DonationOut
    order: OrderOut
    key: str = ""


class DonationResult(CamelModel):
    success: bool
    donation: DonationOut


class StatusResult(CamelModel):
    donation: DonationOut
    payment_status: str


class RefundOut(CamelModel):
    refund_id: str
    status: str
    amount: Decimal

    @field_serializer("amount")
    def _amount(self, value):
        return float(value)


class RefundStatusResult(CamelModel):
    donation: DonationOut
    refund_status: str


class DonationPage(CamelModel):
    total: int
    page: int
    page_size: int
    items: List[DonationOut]


# ----------------------------------------------------------------- webhook

class WebhookEvent(BaseModel):
    """Razorpay webhook envelope; unknown fields are kept."""

    model_config = ConfigDict(extra="allow")

    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    account_id: Optional[str] = None
    created_at: Optional[int] = None

    def entity(self, name) -> Dict[str, Any]:
        return (self.payload.get(name) or {}).get("entity") or {}
