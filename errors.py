"""Custom exceptions for the campus merchandise store."""


class MerchError(Exception):
    """Base exception for all store errors."""

    pass


class ValidationError(MerchError):
    """Raised when input is malformed or out of range."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(MerchError):
    """Raised when a referenced document doesn't exist or is inactive."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ProductNotFound(NotFoundError):
    """Raised when an ordered product is missing or inactive."""

    def __init__(self, product_id: str):
        super().__init__("Product", product_id)


class IllegalTransition(MerchError):
    """Raised when a status change is not permitted from the current state."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")


class OutOfStock(MerchError):
    """Raised when a product can't cover the requested quantity."""

    def __init__(self, product_id: str, requested: int, name: str | None = None):
        self.product_id = product_id
        self.requested = requested
        super().__init__(f"Insufficient stock for product {name or product_id} (requested {requested})")


class OrderNotReady(MerchError):
    """Raised when an order isn't confirmed/processing yet."""

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} not ready for distribution (status '{status}')")


class DuplicateDistribution(MerchError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Distribution already exists for order {order_id}")


class DuplicateReview(MerchError):
    def __init__(self, user_id: str, product_id: str):
        self.user_id = user_id
        self.product_id = product_id
        super().__init__(f"User {user_id} has already reviewed product {product_id}")


class NotPurchased(MerchError):
    """Raised when a review doesn't reference a delivered purchase of the product."""

    def __init__(self, user_id: str, product_id: str, order_id: str):
        self.user_id = user_id
        self.product_id = product_id
        self.order_id = order_id
        super().__init__(
            f"Order {order_id} is not a delivered purchase of product {product_id} by user {user_id}"
        )


class GroupClosed(MerchError):
    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"Group order {group_id} is closed for new orders")


class NotAMember(MerchError):
    def __init__(self, group_id: str, user_id: str):
        self.group_id = group_id
        self.user_id = user_id
        super().__init__(f"User {user_id} is not a member of group order {group_id}")


class PermissionDenied(MerchError):
    """Raised when the acting user lacks the role for an operation."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message)


class PaymentError(MerchError):
    """Raised when the payment gateway rejects or fails a call."""

    pass


class InvalidSignature(PaymentError):
    def __init__(self, what: str = "payment"):
        super().__init__(f"Invalid {what} signature")


class PaymentNotCompleted(MerchError):
    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} payment not completed (status '{status}')")


class AlreadyRefunded(MerchError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} already refunded")
