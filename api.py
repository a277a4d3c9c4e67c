from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from schemas import (
    ErrorResponse,
    OrderRecord,
    OrdersPage,
    PlaceOrderRequest,
    PlaceOrderResponse,
    PublicServiceItem,
    QuoteRequest,
    QuoteResponse,
    ServiceItem,
    StatusBatchRequest,
    StatusBatchResponse,
)
from workflow import OrderWorkflow

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def get_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> int:
    """Identity is established upstream; the session layer forwards the user id."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity"
        ) from None
    if user_id <= 0:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity")
    return user_id


# -----------------------------
# Services
# -----------------------------
services_router = APIRouter(prefix="/api/services", tags=["services"])


@services_router.get("", response_model=List[ServiceItem], responses=ERROR_RESPONSES)
async def read_services(
    q: str = "",
    category: str = "",
    offset: int = 0,
    limit: int = 50,
    user_id: int = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_workflow),
) -> List[ServiceItem]:
    services = await workflow.browse_services(q=q, category=category, offset=offset, limit=limit)
    return [ServiceItem.from_descriptor(s) for s in services]


@services_router.get("/public", response_model=List[PublicServiceItem], responses=ERROR_RESPONSES)
async def read_public_services(
    q: str = "",
    category: str = "",
    offset: int = 0,
    limit: int = 50,
    workflow: OrderWorkflow = Depends(get_workflow),
) -> List[PublicServiceItem]:
    services = await workflow.browse_services(q=q, category=category, offset=offset, limit=limit)
    return [PublicServiceItem.from_descriptor(s) for s in services]


# -----------------------------
# Orders
# -----------------------------
orders_router = APIRouter(prefix="/api/orders", tags=["orders"])


@orders_router.post("/quote", response_model=QuoteResponse, responses=ERROR_RESPONSES)
async def quote_order(
    payload: QuoteRequest,
    user_id: int = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_workflow),
) -> QuoteResponse:
    svc, quote = await workflow.preview_quote(payload.serviceId, payload.quantity)
    return QuoteResponse.from_quote(quote, svc.service_id)


@orders_router.post("", response_model=PlaceOrderResponse, responses=ERROR_RESPONSES)
async def create_order(
    payload: PlaceOrderRequest,
    user_id: int = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_workflow),
) -> PlaceOrderResponse:
    result = await workflow.place_order(
        user_id,
        payload.serviceId,
        payload.quantity,
        payload.link,
        payload.comments,
    )
    return PlaceOrderResponse(
        order=OrderRecord.from_order(result.order),
        quote=QuoteResponse.from_quote(result.quote, result.order.service_id),
    )


@orders_router.get("", response_model=OrdersPage)
async def read_orders(
    page: int = 1,
    limit: int = 20,
    user_id: int = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_workflow),
) -> OrdersPage:
    orders, has_more = await workflow.list_orders(user_id, page, limit)
    return OrdersPage(items=[OrderRecord.from_order(o) for o in orders], hasMore=has_more)


@orders_router.post(
    "/status/batch",
    response_model=StatusBatchResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
)
async def refresh_order_statuses(
    payload: StatusBatchRequest,
    user_id: int = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_workflow),
) -> StatusBatchResponse:
    results = await workflow.refresh_statuses(user_id, payload.ids)
    return StatusBatchResponse(results=results)
