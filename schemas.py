from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from models import Order
from pricing import Quote, ServiceDescriptor, markup_rate


class ErrorResponse(BaseModel):
    reason: str
    message: str
    vendor: Optional[str] = None


class ServiceItem(BaseModel):
    service: int
    name: str
    category: str
    type: str
    rate: Optional[float]
    min: int
    max: int
    markupRate: float
    description: str = ""
    refill: Optional[bool] = None
    cancel: Optional[bool] = None

    @classmethod
    def from_descriptor(cls, svc: ServiceDescriptor) -> "ServiceItem":
        return cls(
            service=svc.service_id,
            name=svc.name,
            category=svc.category,
            type=svc.type,
            rate=float(svc.rate) if svc.rate is not None else None,
            min=svc.min,
            max=svc.max,
            markupRate=float(markup_rate(svc.rate)),
            description=svc.description,
            refill=svc.refill,
            cancel=svc.cancel,
        )


class PublicServiceItem(BaseModel):
    service: int
    name: str
    category: str
    type: str
    min: int
    max: int
    markupRate: float

    @classmethod
    def from_descriptor(cls, svc: ServiceDescriptor) -> "PublicServiceItem":
        return cls(
            service=svc.service_id,
            name=svc.name,
            category=svc.category,
            type=svc.type,
            min=svc.min,
            max=svc.max,
            markupRate=float(markup_rate(svc.rate)),
        )


class QuoteRequest(BaseModel):
    serviceId: Optional[int] = Field(default=None, description="Vendor service id")
    quantity: Optional[float] = Field(default=None, description="Requested units")


class QuoteResponse(BaseModel):
    serviceId: Optional[int] = None
    quantity: int
    rateType: str
    baseRateUSD: float
    basePriceUSD: float
    commissionUSD: float
    totalUSD: float
    perUnitUSD: float
    min: int
    max: int

    @classmethod
    def from_quote(cls, quote: Quote, service_id: Optional[int] = None) -> "QuoteResponse":
        return cls(
            serviceId=service_id,
            quantity=quote.quantity,
            rateType=quote.rate_type,
            baseRateUSD=float(quote.base_rate_usd),
            basePriceUSD=float(quote.base_price_usd),
            commissionUSD=float(quote.commission_usd),
            totalUSD=float(quote.total_usd),
            perUnitUSD=float(quote.per_unit_usd),
            min=quote.min,
            max=quote.max,
        )


class PlaceOrderRequest(BaseModel):
    serviceId: Optional[int] = None
    quantity: Optional[float] = None
    link: Optional[str] = Field(default=None, description="Destination URL")
    comments: Optional[str] = None


class OrderRecord(BaseModel):
    id: int
    serviceId: int
    serviceName: str
    quantity: int
    link: str
    price: float
    status: str
    apiOrderId: str
    createdAt: Optional[datetime]

    @classmethod
    def from_order(cls, order: Order) -> "OrderRecord":
        return cls(
            id=order.id,
            serviceId=order.service_id,
            serviceName=order.service_name,
            quantity=order.quantity,
            link=order.link,
            price=float(order.price),
            status=order.status,
            apiOrderId=order.api_order_id,
            createdAt=order.created_at,
        )


class PlaceOrderResponse(BaseModel):
    message: str = "Order created"
    order: OrderRecord
    quote: QuoteResponse


class OrdersPage(BaseModel):
    items: List[OrderRecord]
    hasMore: bool


class StatusBatchRequest(BaseModel):
    ids: Optional[List[Union[str, int]]] = None


class StatusResult(BaseModel):
    ok: bool
    status: Optional[str] = None
    error: Optional[str] = None


class StatusBatchResponse(BaseModel):
    results: Dict[str, StatusResult]
