from contextlib import asynccontextmanager
from typing import List

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import auth
import cart
import catalog
import orders
from auth import Caller, get_current_user, require_role
from config import CORS_ORIGINS, PORT, SEED_SAMPLE_PRODUCTS
from database import SessionLocal, get_db, init_db, ping
from errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DuplicateEmailError,
    InvalidStatusTransitionError,
    NotFoundError,
    OutOfStockError,
    StoreError,
    TransactionError,
    ValidationError,
)
from logging_config import add_context, clear_context, configure_logging
from schemas import (
    AuthResponse,
    CartAddRequest,
    CartItemOut,
    CartQuantityRequest,
    CheckoutRequest,
    LoginRequest,
    MessageResponse,
    OrderOut,
    ProductIn,
    ProductOut,
    RegisterRequest,
    StatusUpdateRequest,
    UserOut,
)

configure_logging()

logger = structlog.get_logger(__name__)

require_admin = require_role("admin")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if SEED_SAMPLE_PRODUCTS:
        with SessionLocal() as db:
            catalog.seed_products(db)
    yield


app = FastAPI(title="Grocery Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    clear_context()
    add_context(method=request.method, path=request.url.path)
    try:
        return await call_next(request)
    finally:
        clear_context()


# Looked up along the exception's MRO, so a subclass entry overrides its parent's
ERROR_STATUS_CODES = {
    InvalidStatusTransitionError: 400,
    ValidationError: 400,
    AuthenticationError: 401,
    AuthorizationError: 403,
    NotFoundError: 404,
    DuplicateEmailError: 400,
    OutOfStockError: 409,
    ConflictError: 409,
    TransactionError: 500,
}


def status_code_for(exc: StoreError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Map StoreError subclasses to appropriate HTTP responses."""
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database failures outside checkout; the request's session is rolled back on close."""
    logger.error("Database error", error=type(exc).__name__, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Database error; the request was rolled back", "error_type": TransactionError.__name__},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{location}: {first.get('msg')}" if location else first.get("msg", detail)
    return JSONResponse(status_code=400, content={"detail": detail, "error_type": "ValidationError"})


@app.get("/")
def root():
    return {"status": "ok", "service": "grocery-backend"}


# Auth Endpoints
@app.post("/api/auth/register", response_model=AuthResponse)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    user, token = auth.register(db, payload.name, payload.email, payload.password, payload.mobile, payload.role)
    return AuthResponse(user=UserOut.model_validate(user), token=token)


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user, token = auth.login(db, payload.email, payload.password, payload.role)
    return AuthResponse(user=UserOut.model_validate(user), token=token)


# Product Endpoints
@app.get("/api/products", response_model=List[ProductOut])
def list_products(db: Session = Depends(get_db)):
    return [ProductOut.model_validate(p) for p in catalog.list_products(db)]


@app.get("/api/products/{product_id}", response_model=ProductOut)
def get_product(product_id: int, db: Session = Depends(get_db)):
    return ProductOut.model_validate(catalog.get_product(db, product_id))


@app.post("/api/products", response_model=ProductOut)
def create_product(payload: ProductIn, db: Session = Depends(get_db), admin: Caller = Depends(require_admin)):
    return ProductOut.model_validate(catalog.create_product(db, payload))


@app.put("/api/products/{product_id}", response_model=ProductOut)
def update_product(
    product_id: int, payload: ProductIn, db: Session = Depends(get_db), admin: Caller = Depends(require_admin)
):
    return ProductOut.model_validate(catalog.update_product(db, product_id, payload))


@app.delete("/api/products/{product_id}", response_model=MessageResponse)
def delete_product(product_id: int, db: Session = Depends(get_db), admin: Caller = Depends(require_admin)):
    catalog.delete_product(db, product_id)
    return MessageResponse(message="Product deleted successfully")


# Orders
@app.post("/api/orders", response_model=OrderOut)
def create_order(payload: CheckoutRequest, db: Session = Depends(get_db), user: Caller = Depends(get_current_user)):
    order = orders.place_order(db, user, payload.items, payload.address, payload.payment_method)
    return OrderOut.model_validate(order)


@app.get("/api/orders", response_model=List[OrderOut])
def list_orders(db: Session = Depends(get_db), user: Caller = Depends(get_current_user)):
    return [OrderOut.model_validate(o) for o in orders.list_orders(db, user)]


@app.get("/api/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, db: Session = Depends(get_db), user: Caller = Depends(get_current_user)):
    return OrderOut.model_validate(orders.get_order(db, user, order_id))


@app.put("/api/orders/{order_id}", response_model=OrderOut)
def update_order_status(
    order_id: int,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    admin: Caller = Depends(require_admin),
):
    return OrderOut.model_validate(orders.set_status(db, admin, order_id, payload.status))


# Cart
@app.get("/api/cart", response_model=List[CartItemOut])
def get_cart(db: Session = Depends(get_db), user: Caller = Depends(get_current_user)):
    return [CartItemOut.model_validate(item) for item in cart.list_cart(db, user.id)]


@app.post("/api/cart", response_model=MessageResponse)
def add_to_cart(payload: CartAddRequest, db: Session = Depends(get_db), user: Caller = Depends(get_current_user)):
    cart.add_to_cart(db, user.id, payload.product_id, payload.quantity)
    return MessageResponse(message="Item added to cart successfully")


@app.put("/api/cart/{item_id}", response_model=MessageResponse)
def update_cart_quantity(
    item_id: int,
    payload: CartQuantityRequest,
    db: Session = Depends(get_db),
    user: Caller = Depends(get_current_user),
):
    cart.set_quantity(db, user.id, item_id, payload.quantity)
    return MessageResponse(message="Cart item quantity updated successfully")


@app.delete("/api/cart/{product_id}", response_model=MessageResponse)
def remove_from_cart(product_id: int, db: Session = Depends(get_db), user: Caller = Depends(get_current_user)):
    cart.remove_from_cart(db, user.id, product_id)
    return MessageResponse(message="Item removed from cart successfully")


@app.delete("/api/cart", response_model=MessageResponse)
def clear_cart(db: Session = Depends(get_db), user: Caller = Depends(get_current_user)):
    removed = cart.clear_cart(db, user.id)
    return MessageResponse(message=f"Cart cleared ({removed} items removed)")


# Seed sample products if the catalog is empty
@app.post("/api/admin/seed")
def seed_demo(db: Session = Depends(get_db), admin: Caller = Depends(require_admin)):
    count = catalog.seed_products(db)
    if count == 0:
        return {"status": "already-seeded"}
    return {"status": "seeded", "count": count}


# Simple health
@app.get("/test")
def test_database(db: Session = Depends(get_db)):
    status = {
        "backend": "running",
        "database": "not-configured",
    }
    try:
        ping(db)
        status["database"] = "connected"
    except SQLAlchemyError:
        status["database"] = "error"
    return status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
