"""Exceptions raised by the grocery stores and mapped to HTTP responses in main.py."""


class StoreError(Exception):
    """Base exception for all storefront errors."""

    pass


class ValidationError(StoreError):
    """Raised for malformed or missing input."""

    pass


class InvalidStatusTransitionError(ValidationError):
    """Raised when an order cannot move from its current status to the requested one."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change order status from '{current}' to '{requested}'")


class AuthenticationError(StoreError):
    """Raised for a missing or invalid token, or bad credentials."""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class AuthorizationError(StoreError):
    """Raised when the caller's role or ownership does not permit the operation."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFoundError(StoreError):
    """Raised when a user, product, cart item or order doesn't exist."""

    def __init__(self, kind: str, ident=None):
        self.kind = kind
        self.ident = ident
        msg = f"{kind} not found"
        if ident is not None:
            msg = f"{kind} not found: {ident}"
        super().__init__(msg)


class ConflictError(StoreError):
    """Raised when a write collides with existing rows."""

    pass


class DuplicateEmailError(ConflictError):
    """Raised when registering an email that is already taken."""

    def __init__(self, email: str):
        self.email = email
        super().__init__("Email already exists")


class OutOfStockError(ConflictError):
    """Raised when an order line asks for more units than are in stock."""

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}"
        )


class TransactionError(StoreError):
    """Raised when a transaction was rolled back; nothing it wrote is visible."""

    pass
