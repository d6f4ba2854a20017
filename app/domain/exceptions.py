class DomainException(Exception):
    pass


class ValidationError(DomainException):
    pass


class UnauthorizedError(DomainException):
    pass


class ForbiddenError(DomainException):
    pass


class NotFoundError(DomainException):
    pass


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Заказ {order_id} не найден")


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_ids):
        self.product_ids = list(product_ids)
        ids = ", ".join(str(i) for i in self.product_ids)
        super().__init__(f"Товары не найдены: {ids}")


class ConflictError(DomainException):
    pass


class InsufficientStockError(ConflictError):
    def __init__(self, product_id: int, name: str, available: int, required: int):
        self.product_id = product_id
        self.name = name
        self.available = available
        self.required = required
        super().__init__(
            f"Недостаточно товара '{name}' (id {product_id}). Доступно: {available}, требуется: {required}"
        )


class ProductUnavailableError(ConflictError):
    def __init__(self, product_id: int, name: str):
        self.product_id = product_id
        self.name = name
        super().__init__(f"Товар '{name}' (id {product_id}) недоступен для заказа")


class UpstreamError(DomainException):
    pass


class InvalidTransitionError(DomainException):
    def __init__(self, current, requested, allowed, concurrent: bool = False):
        self.current = current
        self.requested = requested
        self.allowed = sorted(s.value for s in allowed)
        self.concurrent = concurrent
        allowed_str = ", ".join(self.allowed) or "нет"
        if concurrent:
            message = (
                f"Статус заказа параллельно изменен на {current.value}, "
                f"переход в {requested.value} не выполнен. Допустимо: {allowed_str}"
            )
        else:
            message = f"Нельзя перевести заказ из {current.value} в {requested.value}. Допустимо: {allowed_str}"
        super().__init__(message)


class InvalidStateError(DomainException):
    def __init__(self, current):
        self.current = current
        super().__init__(f"Заказ в статусе {current.value} нельзя отменить")
