import logging
from typing import Optional
from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from order_lifecycle.config import settings
from order_lifecycle.database import AsyncSessionLocal
from order_lifecycle.presentation.schemas import (
    CreateOrderRequest, CreateOrderResponse, OrderResponse, ItemResponse, CancelItemRequest,
    ReturnItemRequest, CancelReturnRequest, StatusUpdateRequest, ProcessRefundRequest,
    ReturnStatusUpdateRequest, RefundRequestCreate, ApproveRefundRequest, RejectRefundRequest,
    ReturnRequestResponse, ErrorResponse
)
from order_lifecycle.application.create_order import CreateOrderUseCase, CreateOrderDTO, OrderLineDTO
from order_lifecycle.application.get_order import (
    GetOrderUseCase, ListOrdersUseCase, GetReturnRequestUseCase, ListReturnRequestsUseCase, ReturnRequestView,
    to_view
)
from order_lifecycle.application.identifiers import IdentifierAllocator
from order_lifecycle.application.transition_item import (
    ItemTransitionService, TransitionItemUseCase, CancelItemUseCase, RequestReturnUseCase,
    CancelReturnUseCase, ProcessRefundUseCase, UpdateReturnStatusUseCase
)
from order_lifecycle.application.refunds import (
    RequestRefundUseCase, ApproveRefundUseCase, RejectRefundUseCase, ListRefundRequestsUseCase,
    ListAllRefundRequestsUseCase, RefundRequestView
)
from order_lifecycle.domain.models import RefundStatus
from order_lifecycle.domain.status import OrderStatus
from order_lifecycle.domain.exceptions import (
    DomainException, ValidationError, NotFoundError, InsufficientStockError, InvalidTransitionError,
    InvalidQuantityError, ReturnWindowExpiredError, RefundRequestConflictError, DuplicateIdentifierError,
    TransactionAbortedError, PaymentServiceError
)
from order_lifecycle.infrastructure.unit_of_work import UnitOfWork
from order_lifecycle.infrastructure.http_clients import HTTPPaymentsClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin/orders", tags=["admin"])

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InvalidQuantityError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientStockError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    ReturnWindowExpiredError: status.HTTP_409_CONFLICT,
    RefundRequestConflictError: status.HTTP_409_CONFLICT,
    DuplicateIdentifierError: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransactionAbortedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentServiceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: DomainException) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def domain_exception_handler(request: Request, exc: DomainException):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.code} {exc}")
    headers = {"Retry-After": "1"} if getattr(exc, "retryable", False) else None
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=str(exc), code=exc.code).model_dump(),
        headers=headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    logger.warning(f"{request.method} {request.url.path} rejected: {ValidationError.code} {detail}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(detail=detail, code=ValidationError.code).model_dump(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainException, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


# Dependencies
def get_unit_of_work():
    return UnitOfWork(AsyncSessionLocal)


def get_payments_service():
    return HTTPPaymentsClient(settings.PAYMENT_SERVICE_URL, settings.API_TOKEN)


def get_identifier_allocator():
    return IdentifierAllocator(settings.IDENTIFIER_MAX_ATTEMPTS)


def get_transition_service(identifiers: IdentifierAllocator = Depends(get_identifier_allocator)):
    return ItemTransitionService(identifiers, return_window_days=settings.RETURN_WINDOW_DAYS)


def get_current_user_id(x_user_id: str = Header(...)) -> str:
    return x_user_id


# User routes
@router.post(
    "",
    response_model=CreateOrderResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def create_order(
    request: CreateOrderRequest,
    user_id: str = Depends(get_current_user_id),
    uow=Depends(get_unit_of_work),
    payments=Depends(get_payments_service),
    identifiers: IdentifierAllocator = Depends(get_identifier_allocator),
):
    """Place an order from cart lines"""
    use_case = CreateOrderUseCase(uow, payments, identifiers)
    dto = CreateOrderDTO(
        user_id=user_id,
        items=[OrderLineDTO(**line.model_dump()) for line in request.items],
        shipping_info=request.shipping_info,
        payment_method=request.payment_method,
        payment_provider=request.payment_provider,
        transaction_id=request.transaction_id
    )
    order = await use_case(dto)
    return CreateOrderResponse(order_id=order.order_id, order=OrderResponse.from_view(to_view(order)))


@router.get("", response_model=list[OrderResponse])
async def list_orders(user_id: str = Depends(get_current_user_id), uow=Depends(get_unit_of_work)):
    """User's orders, newest first"""
    views = await ListOrdersUseCase(uow)(user_id)
    return [OrderResponse.from_view(view) for view in views]


@router.get("/refund/requests", response_model=list[RefundRequestView])
async def list_refund_requests(user_id: str = Depends(get_current_user_id), uow=Depends(get_unit_of_work)):
    return await ListRefundRequestsUseCase(uow)(user_id)


@router.post("/refund/request", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def request_refund(
    request: RefundRequestCreate,
    user_id: str = Depends(get_current_user_id),
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await RequestRefundUseCase(uow, transitions)(
        user_id, request.order_id, request.item_id, request.quantity, request.refund_account_details, request.note
    )
    return ItemResponse(message="Refund request submitted successfully", item=item)


@router.put("/cancel", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def cancel_item(
    request: CancelItemRequest,
    user_id: str = Depends(get_current_user_id),
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await CancelItemUseCase(uow, transitions)(user_id, request.item_id, request.quantity)
    return ItemResponse(message="Item(s) cancelled successfully", item=item)


@router.put("/return", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def return_item(
    request: ReturnItemRequest,
    user_id: str = Depends(get_current_user_id),
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await RequestReturnUseCase(uow, transitions)(user_id, request.item_id, request.quantity, request.note)
    return ItemResponse(message="Return request placed successfully", item=item)


@router.put("/return-cancel", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def cancel_return(
    request: CancelReturnRequest,
    user_id: str = Depends(get_current_user_id),
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await CancelReturnUseCase(uow, transitions)(request.item_id, request.quantity, user_id=user_id)
    return ItemResponse(message="Return request cancelled successfully", item=item)


@router.get("/{order_id}", response_model=OrderResponse, responses={404: {"model": ErrorResponse}})
async def get_order(order_id: str, user_id: str = Depends(get_current_user_id), uow=Depends(get_unit_of_work)):
    """Order by its order id"""
    view = await GetOrderUseCase(uow)(order_id, user_id)
    return OrderResponse.from_view(view)


# Admin routes
@admin_router.put("/items/status", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def update_item_status(
    request: StatusUpdateRequest,
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await TransitionItemUseCase(uow, transitions)(
        request.item_id, request.new_status, request.quantity, request.note
    )
    return ItemResponse(message="Status updated successfully", item=item)


@admin_router.put("/items/return-cancel", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def admin_cancel_return(
    request: CancelReturnRequest,
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await CancelReturnUseCase(uow, transitions)(request.item_id, request.quantity)
    return ItemResponse(message="Return request cancelled successfully", item=item)


@admin_router.put("/items/refund", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def process_refund(
    request: ProcessRefundRequest,
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await ProcessRefundUseCase(uow, transitions)(request.item_id, request.quantity, request.refund_amount)
    return ItemResponse(message="Refund processed successfully", item=item)


@admin_router.get("/refunds", response_model=list[RefundRequestView])
async def list_all_refund_requests(status: Optional[RefundStatus] = None, uow=Depends(get_unit_of_work)):
    """Refund requests from every user, newest request first"""
    return await ListAllRefundRequestsUseCase(uow)(status)


@admin_router.get("/returns", response_model=list[ReturnRequestView], responses={400: {"model": ErrorResponse}})
async def list_return_requests(status: Optional[OrderStatus] = None, uow=Depends(get_unit_of_work)):
    return await ListReturnRequestsUseCase(uow)(status)


@admin_router.get("/returns/{return_id}", response_model=ReturnRequestResponse, responses={404: {"model": ErrorResponse}})
async def get_return_request(return_id: str, uow=Depends(get_unit_of_work)):
    order, item = await GetReturnRequestUseCase(uow)(return_id)
    return ReturnRequestResponse(
        order_id=order.order_id,
        user_id=order.user_id,
        shipping_info=order.shipping_info,
        ordered_at=order.ordered_at,
        item=item
    )


@admin_router.put("/returns/{return_id}/status", response_model=ItemResponse, responses={409: {"model": ErrorResponse}})
async def update_return_status(
    return_id: str,
    request: ReturnStatusUpdateRequest,
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await UpdateReturnStatusUseCase(uow, transitions)(return_id, request.status, request.note)
    return ItemResponse(message="Return status updated successfully", item=item)


@admin_router.put("/refunds/{order_id}/{item_id}/approve", response_model=ItemResponse)
async def approve_refund(
    order_id: str,
    item_id: str,
    request: ApproveRefundRequest,
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await ApproveRefundUseCase(uow, transitions)(order_id, item_id, request.refund_amount)
    return ItemResponse(message="Refund approved successfully", item=item)


@admin_router.put("/refunds/{order_id}/{item_id}/reject", response_model=ItemResponse)
async def reject_refund(
    order_id: str,
    item_id: str,
    request: RejectRefundRequest,
    uow=Depends(get_unit_of_work),
    transitions: ItemTransitionService = Depends(get_transition_service),
):
    item = await RejectRefundUseCase(uow, transitions)(order_id, item_id, request.rejection_reason)
    return ItemResponse(message="Refund request rejected", item=item)


@admin_router.get("/{order_id}", response_model=OrderResponse, responses={404: {"model": ErrorResponse}})
async def admin_get_order(order_id: str, uow=Depends(get_unit_of_work)):
    """Any user's order by its order id"""
    view = await GetOrderUseCase(uow)(order_id)
    return OrderResponse.from_view(view)
