from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from app.database import AsyncSessionLocal
from app.presentation.schemas import (
    CreateOrderRequest, UpdateStatusRequest, OrderResponse, OrderListResponse,
    PaginationResponse, ErrorResponse
)
from app.application.create_order import CreateOrderUseCase, CreateOrderDTO, OrderLineDTO
from app.application.change_status import ChangeOrderStatusUseCase, CancelOrderUseCase
from app.application.get_order import GetOrderUseCase, ListOrdersUseCase
from app.application.interfaces import ProductCatalog
from app.application.stock_sync import StockSynchronizer
from app.domain.models import OrderStatus, Requester, Role
from app.domain.exceptions import (
    DomainException, ValidationError, UnauthorizedError, ForbiddenError, NotFoundError,
    ConflictError, UpstreamError, InvalidTransitionError, InvalidStateError
)
from app.infrastructure.unit_of_work import UnitOfWork
from app.infrastructure.http_clients import HTTPProductClient
from app.config import settings

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST),
    (UnauthorizedError, status.HTTP_401_UNAUTHORIZED),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UpstreamError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_error(e: DomainException) -> HTTPException:
    """Доменная ошибка → HTTP ответ"""
    if isinstance(e, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": str(e),
                "current_status": e.current.value,
                "allowed": e.allowed
            }
        )
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# Фабрики зависимостей
def get_unit_of_work() -> UnitOfWork:
    return UnitOfWork(AsyncSessionLocal)


def get_product_client() -> ProductCatalog:
    return HTTPProductClient(
        settings.PRODUCT_SERVICE_URL,
        timeout=settings.PRODUCT_SERVICE_TIMEOUT,
        max_retries=settings.PRODUCT_SERVICE_MAX_RETRIES,
        retry_backoff=settings.PRODUCT_SERVICE_RETRY_BACKOFF
    )


def get_stock_sync(
    uow: UnitOfWork = Depends(get_unit_of_work),
    catalog: ProductCatalog = Depends(get_product_client)
) -> StockSynchronizer:
    return StockSynchronizer(
        uow,
        catalog,
        max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
        claim_timeout=settings.OUTBOX_CLAIM_TIMEOUT
    )


def get_create_order_use_case(
    uow: UnitOfWork = Depends(get_unit_of_work),
    catalog: ProductCatalog = Depends(get_product_client),
    stock_sync: StockSynchronizer = Depends(get_stock_sync)
):
    return CreateOrderUseCase(
        uow,
        catalog,
        stock_sync,
        max_item_quantity=settings.MAX_ITEM_QUANTITY,
        min_order_amount=settings.MIN_ORDER_AMOUNT
    )


def get_get_order_use_case(uow: UnitOfWork = Depends(get_unit_of_work)):
    return GetOrderUseCase(uow)


def get_list_orders_use_case(uow: UnitOfWork = Depends(get_unit_of_work)):
    return ListOrdersUseCase(uow, max_limit=settings.MAX_PAGE_SIZE)


def get_change_status_use_case(
    uow: UnitOfWork = Depends(get_unit_of_work),
    stock_sync: StockSynchronizer = Depends(get_stock_sync)
):
    return ChangeOrderStatusUseCase(uow, stock_sync)


def get_cancel_order_use_case(
    uow: UnitOfWork = Depends(get_unit_of_work),
    stock_sync: StockSynchronizer = Depends(get_stock_sync)
):
    return CancelOrderUseCase(uow, stock_sync)


def get_requester(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None)
) -> Requester:
    """Пользователь из заголовков, которые проставляет API gateway"""
    if not x_user_id or not x_user_id.strip():
        raise to_http_error(UnauthorizedError("Не передан X-User-Id"))
    role = (x_user_role or Role.CUSTOMER.value).strip().lower()
    return Requester(user_id=x_user_id.strip(), role=role)


@router.post(
    "/orders",
    response_model=OrderResponse,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def create_order(
    request: CreateOrderRequest,
    requester: Requester = Depends(get_requester),
    use_case: CreateOrderUseCase = Depends(get_create_order_use_case)
):
    """Создать новый заказ"""
    try:
        dto = CreateOrderDTO(
            user_id=requester.user_id,
            items=[
                OrderLineDTO(product_id=line.product_id, quantity=line.quantity)
                for line in request.items
            ],
            delivery_address=request.delivery_address,
            notes=request.notes
        )
        order = await use_case(dto)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_error(e)


@router.get("/orders", response_model=OrderListResponse, responses=ERROR_RESPONSES)
async def list_orders(
    page: int = Query(default=1),
    limit: int = Query(default=10),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    requester: Requester = Depends(get_requester),
    use_case: ListOrdersUseCase = Depends(get_list_orders_use_case)
):
    """Заказы текущего пользователя"""
    try:
        result = await use_case(requester, page=page, limit=limit, status=order_status)
        return OrderListResponse(
            orders=[OrderResponse.from_domain(order) for order in result.orders],
            pagination=PaginationResponse(
                page=result.page,
                limit=result.limit,
                total=result.total,
                total_pages=result.total_pages
            )
        )
    except DomainException as e:
        raise to_http_error(e)


@router.get("/orders/{order_id}", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def get_order(
    order_id: int,
    requester: Requester = Depends(get_requester),
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    """Получить заказ по ID"""
    try:
        order = await use_case(order_id, requester)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_error(e)


@router.patch("/orders/{order_id}/status", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def update_order_status(
    order_id: int,
    request: UpdateStatusRequest,
    requester: Requester = Depends(get_requester),
    use_case: ChangeOrderStatusUseCase = Depends(get_change_status_use_case)
):
    """Сменить статус заказа (владелец или admin)"""
    try:
        order = await use_case(order_id, request.status, requester)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_error(e)


@router.delete("/orders/{order_id}", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def cancel_order(
    order_id: int,
    requester: Requester = Depends(get_requester),
    use_case: CancelOrderUseCase = Depends(get_cancel_order_use_case)
):
    """Отменить заказ (только владелец, из pending или confirmed)"""
    try:
        order = await use_case(order_id, requester)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_error(e)
