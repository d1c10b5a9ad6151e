"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders API,
the read DTOs it returns, and the models used to parse payloads coming back
from the payment gateway and the catalog service.
"""

import re
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


PRODUCT_REF_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
CURRENCIES = {"ARS", "USD", "EUR", "BRL", "CLP", "MXN", "UYU"}


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product_ref: Catalog reference (1-64 chars: letters, digits, '_' and '-').
        quantity: Positive integer indicating units requested.
        unit_price_cents: Unit price in minor units.
        title: Optional product title snapshot.
    """

    product_ref: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    unit_price_cents: int = Field(default=0, ge=0)
    title: str = Field(default="", max_length=200)

    @field_validator("product_ref")
    @classmethod
    def validate_product_ref(cls, v: str) -> str:
        v2 = v.strip()
        if not PRODUCT_REF_RE.match(v2):
            raise ValueError("Invalid product reference")
        return v2


class ShippingAddressIn(BaseModel):
    street: str = Field(min_length=2)
    number: str = Field(min_length=1)
    city: str = Field(min_length=2)
    province: str = Field(min_length=2)
    postal_code: str = Field(min_length=4)
    notes: Optional[str] = None

    def as_text(self) -> str:
        return f"{self.street} {self.number}, {self.city}, {self.province} ({self.postal_code})"


class CreateOrderDTO(BaseModel):
    """Schema for creating a pending order at checkout.

    Attributes:
        items: Line items (at least one).
        total_cents: Order total in integer minor units (must be > 0).
        currency: 3-letter ISO code, normalized to uppercase.
        email/name/phone: Buyer snapshot for the confirmation.
        shipping_method: ``delivery`` requires ``shipping_address``;
            ``pickup`` requires ``pickup_point``.
        external_reference: Optional client-generated correlation key.
    """

    items: list[OrderItemIn] = Field(min_length=1)
    total_cents: int = Field(gt=0)
    currency: str = Field(default="ARS", min_length=3, max_length=3)
    email: str = Field(max_length=254)
    name: str = Field(min_length=2, max_length=120)
    phone: str = Field(min_length=6, max_length=40)
    shipping_method: Literal["delivery", "pickup"] = "delivery"
    shipping_address: Optional[ShippingAddressIn] = None
    pickup_point: Optional[str] = Field(default=None, max_length=120)
    external_reference: Optional[str] = Field(default=None, min_length=8, max_length=64)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v2 = v.upper()
        if v2 not in CURRENCIES:
            raise ValueError("Unsupported currency")
        return v2

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v2 = v.strip().lower()
        if "@" not in v2:
            raise ValueError("Invalid email")
        return v2

    @model_validator(mode="after")
    def check_shipping(self):
        if self.shipping_method == "delivery" and self.shipping_address is None:
            raise ValueError("shipping_address is required for delivery")
        if self.shipping_method == "pickup" and not (self.pickup_point or "").strip():
            raise ValueError("pickup_point is required for pickup")
        return self


class PreferenceRequestDTO(BaseModel):
    order_id: str = Field(min_length=1)


class StatusAdvanceDTO(BaseModel):
    next_status: Literal["shipped", "delivered"]


class OrderReadDTO(BaseModel):
    """Read model returned by the order endpoints."""

    id: str
    order_number: Optional[str] = None
    status: str
    total_cents: int
    currency: str
    external_reference: str
    stock_adjusted: bool
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    payment_status_detail: Optional[str] = None
    failure_reason: Optional[str] = None
    items: list[dict] = []


# ---- Downstream payloads ----

class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _GatewayRef(_Lenient):
    id: Optional[Any] = None


class GatewayPaymentIn(_Lenient):
    """Subset of a gateway payment resource."""

    id: Optional[Any] = None
    status: Optional[str] = None
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    metadata: Optional[dict] = None
    order: Optional[_GatewayRef] = None

    def correlation_reference(self) -> Optional[str]:
        """External reference, else the one echoed back in metadata."""
        if self.external_reference and str(self.external_reference).strip():
            return str(self.external_reference).strip()
        meta = self.metadata or {}
        for key in ("mp_external_reference", "mpExternalReference", "external_reference"):
            value = meta.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        return None

    def merchant_order_id(self) -> Optional[str]:
        if self.order is not None and self.order.id is not None:
            return str(self.order.id)
        return None


class _MerchantOrderPaymentIn(_Lenient):
    id: Optional[Any] = None
    status: Optional[str] = None


class MerchantOrderIn(_Lenient):
    id: Optional[Any] = None
    payments: list[_MerchantOrderPaymentIn] = []

    @field_validator("payments", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or []


class CatalogProductIn(_Lenient):
    ref: str
    title: Optional[str] = None
    stock: Optional[int] = None
