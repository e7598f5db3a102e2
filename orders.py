"""
Order placement and the order query/status service.

place_order turns a cart snapshot into an order inside one transaction. Each
line's stock decrement is a single conditional UPDATE, so two checkouts racing
for the same product can never push its stock below zero: the loser sees an
affected-row count of 0 and its whole order is rolled back.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from auth import Caller
from errors import (
    AuthorizationError,
    InvalidStatusTransitionError,
    NotFoundError,
    OutOfStockError,
    StoreError,
    TransactionError,
    ValidationError,
)
from models import ORDER_STATUSES, Order, OrderItem, Product, utcnow

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

# delivered and cancelled are terminal
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"shipped", "cancelled"}),
    "shipped": frozenset({"delivered", "cancelled"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}


class OrderLine(Protocol):
    product_id: int
    quantity: int
    price: Decimal


def order_total(lines: Iterable[OrderLine]) -> Decimal:
    total = sum((Decimal(line.price) * line.quantity for line in lines), Decimal("0"))
    return total.quantize(CENTS)


def _decrement_stock(db: Session, product_id: int, quantity: int) -> bool:
    result = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def place_order(
    db: Session,
    caller: Caller,
    lines: List[OrderLine],
    address: str,
    payment_method: Optional[str] = None,
) -> Order:
    """Create an order with its items and take the stock, all or nothing.

    The submitted unit prices are stored as given and the total is their sum;
    a price that differs from the catalog is only logged. The cart is left
    alone: clearing it is up to the client once the order is placed.
    """
    if not lines:
        raise ValidationError("Order must contain at least one item")
    if not address or not address.strip():
        raise ValidationError("Shipping address is required")
    for line in lines:
        if line.quantity < 1:
            raise ValidationError(f"Quantity for product {line.product_id} must be at least 1")
        if Decimal(line.price) < 0:
            raise ValidationError(f"Price for product {line.product_id} must not be negative")

    total = order_total(lines)
    log = logger.bind(user_id=caller.id, payment_method=payment_method)

    try:
        product_ids = {line.product_id for line in lines}
        catalog_prices = dict(db.execute(select(Product.id, Product.price).where(Product.id.in_(product_ids))).all())

        order = Order(user_id=caller.id, status="pending", total_amount=total, shipping_address=address)
        db.add(order)
        db.flush()

        for line in lines:
            if line.product_id not in catalog_prices:
                raise TransactionError(f"Product {line.product_id} does not exist; order rolled back")
            if Decimal(line.price) != catalog_prices[line.product_id]:
                log.warning(
                    "Checkout price differs from catalog",
                    product_id=line.product_id,
                    submitted=str(line.price),
                    catalog=str(catalog_prices[line.product_id]),
                )

            db.add(OrderItem(order_id=order.id, product_id=line.product_id, quantity=line.quantity, price=line.price))
            if not _decrement_stock(db, line.product_id, line.quantity):
                available = db.scalar(select(Product.stock).where(Product.id == line.product_id))
                raise OutOfStockError(line.product_id, line.quantity, available or 0)

        db.commit()
    except StoreError as e:
        db.rollback()
        log.warning("Order rolled back", reason=type(e).__name__, detail=str(e))
        raise
    except SQLAlchemyError as e:
        db.rollback()
        log.error("Order rolled back", reason="database_error", exc_info=True)
        raise TransactionError("Order could not be placed; no changes were made") from e

    log.info("Order placed", order_id=order.id, total=str(total), lines=len(lines))
    return get_order(db, caller, order.id)


def _order_query():
    return (
        select(Order)
        .options(
            joinedload(Order.user),
            selectinload(Order.items).joinedload(OrderItem.product),
        )
        .execution_options(populate_existing=True)
    )


def ensure_can_view(caller: Caller, order: Order) -> None:
    if not caller.is_admin and order.user_id != caller.id:
        raise AuthorizationError("Access denied")


def list_orders(db: Session, caller: Caller) -> List[Order]:
    """All orders for an admin, the caller's own otherwise; newest first."""
    stmt = _order_query()
    if not caller.is_admin:
        stmt = stmt.where(Order.user_id == caller.id)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
    return list(db.scalars(stmt).unique())


def get_order(db: Session, caller: Caller, order_id: int) -> Order:
    order = db.scalars(_order_query().where(Order.id == order_id)).unique().one_or_none()
    if order is None:
        raise NotFoundError("Order", order_id)
    ensure_can_view(caller, order)
    return order


def set_status(db: Session, caller: Caller, order_id: int, status: str) -> Order:
    if not caller.is_admin:
        raise AuthorizationError("Admin only")

    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)

    if status not in ORDER_STATUSES or status not in ALLOWED_TRANSITIONS[order.status]:
        raise InvalidStatusTransitionError(order.status, status)

    previous = order.status
    order.status = status
    order.updated_at = utcnow()
    db.commit()
    logger.info("Order status changed", order_id=order_id, previous=previous, status=status, by=caller.id)
    return get_order(db, caller, order_id)
