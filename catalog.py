"""Catalog store: product rows and their stock counters."""

from decimal import Decimal
from typing import List

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError
from models import Product, utcnow
from schemas import ProductIn

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = ("name", "price", "stock", "image_url")

SAMPLE_PRODUCTS = [
    {
        "name": "Organic Tomatoes",
        "description": "Fresh, locally grown organic tomatoes",
        "price": Decimal("20.00"),
        "stock": 100,
        "image_url": "https://source.unsplash.com/featured/?tomatoes",
    },
    {
        "name": "Fresh Carrots",
        "description": "Sweet and crunchy organic carrots",
        "price": Decimal("15.00"),
        "stock": 80,
        "image_url": "https://source.unsplash.com/featured/?carrots",
    },
    {
        "name": "Potatoes",
        "description": "Farm-fresh potatoes perfect for any dish",
        "price": Decimal("10.00"),
        "stock": 120,
        "image_url": "https://source.unsplash.com/featured/?potatoes",
    },
    {
        "name": "Broccoli",
        "description": "Nutritious and fresh broccoli heads",
        "price": Decimal("25.00"),
        "stock": 60,
        "image_url": "https://source.unsplash.com/featured/?broccoli",
    },
    {
        "name": "Spinach",
        "description": "Organic baby spinach leaves",
        "price": Decimal("18.00"),
        "stock": 75,
        "image_url": "https://source.unsplash.com/featured/?spinach",
    },
    {
        "name": "Bell Peppers",
        "description": "Colorful mix of fresh bell peppers",
        "price": Decimal("22.00"),
        "stock": 90,
        "image_url": "https://source.unsplash.com/featured/?bellpeppers",
    },
    {
        "name": "Onions",
        "description": "Fresh yellow onions",
        "price": Decimal("12.00"),
        "stock": 150,
        "image_url": "https://source.unsplash.com/featured/?onions",
    },
    {
        "name": "Garlic",
        "description": "Fresh garlic bulbs",
        "price": Decimal("8.00"),
        "stock": 200,
        "image_url": "https://source.unsplash.com/featured/?garlic",
    },
]


def list_products(db: Session) -> List[Product]:
    return list(db.scalars(select(Product).order_by(Product.id)))


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def create_product(db: Session, payload: ProductIn) -> Product:
    product = Product(**payload.model_dump())
    db.add(product)
    db.commit()
    logger.info("Product created", product_id=product.id, stock=product.stock)
    return product


def update_product(db: Session, product_id: int, payload: ProductIn) -> Product:
    """Replace name, price, stock and image and refresh updated_at.

    The description only changes when the payload sends one explicitly.
    """
    product = get_product(db, product_id)
    fields = list(UPDATABLE_FIELDS)
    if "description" in payload.model_fields_set:
        fields.append("description")
    for field in fields:
        setattr(product, field, getattr(payload, field))
    product.updated_at = utcnow()
    db.commit()
    logger.info("Product updated", product_id=product.id, stock=product.stock)
    return product


def delete_product(db: Session, product_id: int) -> None:
    """Delete a product.

    Rows in order_items and cart_items keep their foreign keys, so a product
    that has been ordered or sits in a cart can't be deleted.
    """
    product = get_product(db, product_id)
    db.delete(product)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("Product delete blocked by references", product_id=product_id)
        raise ConflictError(f"Product {product_id} is referenced by existing orders or carts") from e
    logger.info("Product deleted", product_id=product_id)


def seed_products(db: Session) -> int:
    """Insert the sample grocery products when the catalog is empty; return how many."""
    if db.scalar(select(func.count()).select_from(Product)):
        return 0
    db.add_all(Product(**p) for p in SAMPLE_PRODUCTS)
    db.commit()
    logger.info("Sample products inserted", count=len(SAMPLE_PRODUCTS))
    return len(SAMPLE_PRODUCTS)
