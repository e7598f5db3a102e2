"""Cart store: one row per (user, product) with a quantity of at least 1."""

from typing import List, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from errors import NotFoundError, ValidationError
from models import CartItem, Product, utcnow

logger = structlog.get_logger(__name__)


def list_cart(db: Session, user_id: int) -> List[CartItem]:
    stmt = (
        select(CartItem)
        .options(joinedload(CartItem.product))
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.id)
    )
    return list(db.scalars(stmt))


def _find_item(db: Session, user_id: int, product_id: int) -> Optional[CartItem]:
    return db.scalar(select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id))


def _increment(item: CartItem, quantity: int) -> None:
    item.quantity = CartItem.quantity + quantity
    item.updated_at = utcnow()


def add_to_cart(db: Session, user_id: int, product_id: int, quantity: int = 1) -> CartItem:
    """Add `quantity` units of a product, incrementing an existing row.

    Stock is not checked here; set_quantity and checkout do that.
    """
    if quantity is None or quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    if db.get(Product, product_id) is None:
        raise NotFoundError("Product", product_id)

    item = _find_item(db, user_id, product_id)
    if item is not None:
        _increment(item, quantity)
        db.commit()
    else:
        item = CartItem(user_id=user_id, product_id=product_id, quantity=quantity)
        db.add(item)
        try:
            db.commit()
        except IntegrityError:
            # another request inserted the same (user, product) row first
            db.rollback()
            item = _find_item(db, user_id, product_id)
            if item is None:
                raise
            _increment(item, quantity)
            db.commit()
    db.refresh(item)
    logger.info("Cart item added", user_id=user_id, product_id=product_id, quantity=item.quantity)
    return item


def set_quantity(db: Session, user_id: int, item_id: int, quantity: Optional[int]) -> CartItem:
    """Set a cart row's quantity, bounded by the product's stock as read now."""
    if not quantity or quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    item = db.scalar(
        select(CartItem)
        .options(joinedload(CartItem.product))
        .where(CartItem.id == item_id, CartItem.user_id == user_id)
    )
    if item is None:
        raise NotFoundError("Cart item", item_id)

    if quantity > item.product.stock:
        raise ValidationError(f"Quantity cannot exceed available stock ({item.product.stock})")

    item.quantity = quantity
    item.updated_at = utcnow()
    db.commit()
    logger.info("Cart quantity set", user_id=user_id, item_id=item_id, quantity=quantity)
    return item


def remove_from_cart(db: Session, user_id: int, product_id: int) -> None:
    item = _find_item(db, user_id, product_id)
    if item is None:
        raise NotFoundError("Item in cart", product_id)
    db.delete(item)
    db.commit()
    logger.info("Cart item removed", user_id=user_id, product_id=product_id)


def clear_cart(db: Session, user_id: int) -> int:
    """Delete every cart row the user has; return how many were removed."""
    result = db.execute(delete(CartItem).where(CartItem.user_id == user_id))
    db.commit()
    logger.info("Cart cleared", user_id=user_id, removed=result.rowcount)
    return result.rowcount
