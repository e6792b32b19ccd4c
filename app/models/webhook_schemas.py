"""
Pydantic schemas for POS webhook payloads
"""

from pydantic import BaseModel, Field
from typing import Any, Optional


class SquareEventData(BaseModel):
    """data block of a Square webhook event"""
    type: Optional[str] = None
    id: Optional[str] = None
    object: dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "allow"


class SquareWebhookEvent(BaseModel):
    """
    Square webhook envelope.
    Only the fields used for routing are typed; the object body stays a dict
    because its shape depends on the event type.
    """
    merchant_id: Optional[str] = None
    type: str
    event_id: str
    created_at: Optional[str] = None
    data: SquareEventData = Field(default_factory=SquareEventData)

    class Config:
        extra = "allow"


class ShopifyAddress(BaseModel):
    """Shipping or billing address on a Shopify order"""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    class Config:
        extra = "allow"


class ShopifyCustomer(BaseModel):
    """Customer block on a Shopify order"""
    id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    class Config:
        extra = "allow"


class ShopifyOrder(BaseModel):
    """
    Shopify orders/create payload (subset).
    """
    id: int
    name: Optional[str] = None
    total_price: Optional[str] = None
    location_id: Optional[int] = None
    source_name: Optional[str] = None
    customer: Optional[ShopifyCustomer] = None
    shipping_address: Optional[ShopifyAddress] = None
    billing_address: Optional[ShopifyAddress] = None

    class Config:
        extra = "allow"


class ShopifyRefund(BaseModel):
    """Shopify refunds/create payload (subset)"""
    id: int
    order_id: int

    class Config:
        extra = "allow"


class WebhookResponse(BaseModel):
    """
    Response returned from webhook endpoints
    """
    status: str
    message: str
    transaction_id: Optional[int] = None
    sms_status: Optional[str] = None
