"""Tests for order placement, order queries and status changes."""

import threading
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

import orders
from auth import Caller
from database import Base, init_db, make_engine
from errors import (
    AuthorizationError,
    InvalidStatusTransitionError,
    NotFoundError,
    OutOfStockError,
    StoreError,
    TransactionError,
)
from models import Order, OrderItem, Product, User
from schemas import OrderLineIn


def checkout(client, headers, items, address="12 Market Road"):
    return client.post(
        "/api/orders",
        json={"items": items, "address": address, "payment_method": "cash"},
        headers=headers,
    )


def line(product_id, quantity, price):
    return {"id": product_id, "quantity": quantity, "price": price}


def count(db_session, model):
    return db_session.scalar(select(func.count()).select_from(model))


class TestPlaceOrder:
    def test_total_and_items_match_submission(self, client, buyer, buyer_headers, make_product):
        tomatoes = make_product("Organic Tomatoes", price="20.00", stock=100)
        garlic = make_product("Garlic", price="8.00", stock=200)
        submitted = [line(tomatoes, 3, "20.00"), line(garlic, 2, "8.00")]

        response = checkout(client, buyer_headers, submitted)
        assert response.status_code == 200
        order = response.json()

        assert order["status"] == "pending"
        assert order["user_id"] == buyer["user"]["id"]
        assert order["shipping_address"] == "12 Market Road"
        assert Decimal(order["total_amount"]) == Decimal("76.00")
        assert Decimal(order["total_amount"]) == sum(
            Decimal(item["price"]) * item["quantity"] for item in order["items"]
        )
        returned = [(i["product_id"], i["quantity"], Decimal(i["price"])) for i in order["items"]]
        assert returned == [(tomatoes, 3, Decimal("20.00")), (garlic, 2, Decimal("8.00"))]

    def test_stock_is_decremented(self, client, buyer_headers, make_product, stock_of):
        product_id = make_product(stock=10)
        response = checkout(client, buyer_headers, [line(product_id, 7, "20.00")])
        assert response.status_code == 200
        assert stock_of(product_id) == 3

    def test_buying_the_last_units(self, client, buyer_headers, make_product, stock_of):
        product_id = make_product(stock=2)
        assert checkout(client, buyer_headers, [line(product_id, 2, "20.00")]).status_code == 200
        assert stock_of(product_id) == 0

    def test_accepts_product_id_aliases(self, client, buyer_headers, make_product):
        product_id = make_product(stock=5)
        items = [{"productId": product_id, "quantity": 1, "price": "20.00"}]
        assert checkout(client, buyer_headers, items).status_code == 200
        items = [{"product_id": product_id, "quantity": 1, "price": "20.00"}]
        assert checkout(client, buyer_headers, items).status_code == 200

    def test_unknown_product_rolls_back_everything(self, client, buyer_headers, make_product, stock_of, db_session):
        first = make_product("Potatoes", stock=10)
        second = make_product("Onions", stock=10)
        items = [line(first, 2, "10.00"), line(second, 3, "12.00"), line(9999, 1, "1.00")]

        response = checkout(client, buyer_headers, items)
        assert response.status_code == 500
        assert response.json()["error_type"] == "TransactionError"

        assert stock_of(first) == 10
        assert stock_of(second) == 10
        assert count(db_session, Order) == 0
        assert count(db_session, OrderItem) == 0

    def test_insufficient_stock_rolls_back_everything(self, client, buyer_headers, make_product, stock_of, db_session):
        plenty = make_product("Potatoes", stock=10)
        scarce = make_product("Garlic", stock=1)
        items = [line(plenty, 4, "10.00"), line(scarce, 2, "8.00")]

        response = checkout(client, buyer_headers, items)
        assert response.status_code == 409
        assert response.json()["error_type"] == "OutOfStockError"

        assert stock_of(plenty) == 10
        assert stock_of(scarce) == 1
        assert count(db_session, Order) == 0

    def test_second_checkout_of_same_stock_is_rejected(self, client, buyer_headers, other_buyer_headers, make_product, stock_of):
        product_id = make_product(stock=10)

        first = checkout(client, buyer_headers, [line(product_id, 6, "20.00")])
        second = checkout(client, other_buyer_headers, [line(product_id, 6, "20.00")])

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["detail"] == f"Insufficient stock for product {product_id}: requested 6, available 4"
        assert stock_of(product_id) == 4

    def test_cart_is_left_for_the_client_to_clear(self, client, buyer_headers, make_product):
        product_id = make_product(stock=10)
        client.post("/api/cart", json={"productId": product_id, "quantity": 2}, headers=buyer_headers)

        assert checkout(client, buyer_headers, [line(product_id, 2, "20.00")]).status_code == 200
        assert len(client.get("/api/cart", headers=buyer_headers).json()) == 1

    def test_client_price_is_kept_as_submitted(self, client, buyer_headers, make_product):
        product_id = make_product(price="20.00", stock=10)
        response = checkout(client, buyer_headers, [line(product_id, 2, "15.00")])
        assert response.status_code == 200
        assert Decimal(response.json()["total_amount"]) == Decimal("30.00")
        assert Decimal(response.json()["items"][0]["price"]) == Decimal("15.00")

    def test_item_price_is_a_snapshot(self, client, buyer_headers, admin_headers, make_product):
        product_id = make_product(price="20.00", stock=10)
        order_id = checkout(client, buyer_headers, [line(product_id, 1, "20.00")]).json()["id"]

        body = {"name": "Organic Tomatoes", "price": "35.00", "stock": 9}
        assert client.put(f"/api/products/{product_id}", json=body, headers=admin_headers).status_code == 200

        order = client.get(f"/api/orders/{order_id}", headers=buyer_headers).json()
        assert Decimal(order["items"][0]["price"]) == Decimal("20.00")
        assert Decimal(order["total_amount"]) == Decimal("20.00")

    @pytest.mark.parametrize(
        "body",
        [
            {"items": [], "address": "12 Market Road"},
            {"items": [{"id": 1, "quantity": 0, "price": "1.00"}], "address": "12 Market Road"},
            {"items": [{"id": 1, "quantity": 1, "price": "-1.00"}], "address": "12 Market Road"},
            {"items": [{"id": 1, "quantity": 1, "price": "1.00"}], "address": ""},
            {"items": [{"id": 1, "quantity": 1, "price": "1.00"}]},
        ],
    )
    def test_malformed_checkout(self, client, buyer_headers, body):
        response = client.post("/api/orders", json=body, headers=buyer_headers)
        assert response.status_code == 400

    def test_requires_login(self, client, make_product):
        product_id = make_product()
        assert checkout(client, {}, [line(product_id, 1, "20.00")]).status_code == 401


class TestPlaceOrderStore:
    def _buyer(self, db_session):
        user = User(name="Asha", email="asha@grocer.io", password="x", mobile="1", role="buyer")
        db_session.add(user)
        db_session.commit()
        return Caller(id=user.id, email=user.email, role=user.role)

    def test_order_total_rounds_to_cents(self):
        lines = [
            OrderLineIn(id=1, quantity=3, price=Decimal("0.10")),
            OrderLineIn(id=2, quantity=1, price=Decimal("19.99")),
        ]
        assert orders.order_total(lines) == Decimal("20.29")

    def test_failure_partway_leaves_no_trace(self, db_session, make_product, stock_of):
        caller = self._buyer(db_session)
        first = make_product(stock=5)
        second = make_product(stock=1)
        lines = [
            OrderLineIn(id=first, quantity=5, price=Decimal("20.00")),
            OrderLineIn(id=second, quantity=2, price=Decimal("20.00")),
        ]

        with pytest.raises(OutOfStockError) as excinfo:
            orders.place_order(db_session, caller, lines, "12 Market Road")
        assert excinfo.value.available == 1

        assert stock_of(first) == 5
        assert stock_of(second) == 1
        assert count(db_session, Order) == 0
        assert count(db_session, OrderItem) == 0

    def test_missing_product_is_transaction_error(self, db_session, make_product, stock_of):
        caller = self._buyer(db_session)
        first = make_product(stock=5)
        lines = [
            OrderLineIn(id=first, quantity=1, price=Decimal("20.00")),
            OrderLineIn(id=4242, quantity=1, price=Decimal("20.00")),
        ]
        with pytest.raises(TransactionError):
            orders.place_order(db_session, caller, lines, "12 Market Road")
        assert stock_of(first) == 5

    def test_concurrent_checkouts_never_oversell(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False, "timeout": 30})
        init_db(engine)
        Session = sessionmaker(bind=engine, expire_on_commit=False)

        with Session() as db:
            users = [
                User(name=f"Buyer {n}", email=f"buyer{n}@grocer.io", password="x", mobile="1", role="buyer")
                for n in range(2)
            ]
            product = Product(name="Organic Tomatoes", price=Decimal("20.00"), stock=10)
            db.add_all([*users, product])
            db.commit()
            callers = [Caller(id=u.id, email=u.email, role="buyer") for u in users]
            product_id = product.id

        barrier = threading.Barrier(2)
        outcomes = []

        def buy(caller):
            lines = [OrderLineIn(id=product_id, quantity=6, price=Decimal("20.00"))]
            with Session() as db:
                barrier.wait()
                try:
                    outcomes.append(orders.place_order(db, caller, lines, "12 Market Road").id)
                except StoreError as e:
                    outcomes.append(e)

        threads = [threading.Thread(target=buy, args=(c,)) for c in callers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        successes = [o for o in outcomes if isinstance(o, int)]
        failures = [o for o in outcomes if isinstance(o, StoreError)]
        assert len(successes) == 1
        assert len(failures) == 1

        with Session() as db:
            assert db.get(Product, product_id).stock == 4
            assert count(db, Order) == 1

        Base.metadata.drop_all(bind=engine)
        engine.dispose()


class TestOrderQueries:
    def test_buyer_sees_only_own_orders_newest_first(
        self, client, buyer_headers, other_buyer_headers, make_product
    ):
        product_id = make_product(stock=50)
        first = checkout(client, buyer_headers, [line(product_id, 1, "20.00")]).json()["id"]
        checkout(client, other_buyer_headers, [line(product_id, 1, "20.00")])
        second = checkout(client, buyer_headers, [line(product_id, 2, "20.00")]).json()["id"]

        data = client.get("/api/orders", headers=buyer_headers).json()
        assert [o["id"] for o in data] == [second, first]
        assert data[0]["customer_name"] == "Asha Buyer"
        assert data[0]["items"][0]["name"] == "Organic Tomatoes"
        assert data[0]["items"][0]["quantity"] == 2

    def test_admin_sees_all_orders(self, client, buyer_headers, other_buyer_headers, admin_headers, make_product):
        product_id = make_product(stock=50)
        checkout(client, buyer_headers, [line(product_id, 1, "20.00")])
        checkout(client, other_buyer_headers, [line(product_id, 1, "20.00")])

        data = client.get("/api/orders", headers=admin_headers).json()
        assert [o["customer_name"] for o in data] == ["Ravi Buyer", "Asha Buyer"]

    def test_get_order_access(self, client, buyer_headers, other_buyer_headers, admin_headers, make_product):
        product_id = make_product(stock=5)
        order_id = checkout(client, buyer_headers, [line(product_id, 1, "20.00")]).json()["id"]

        own = client.get(f"/api/orders/{order_id}", headers=buyer_headers)
        assert own.status_code == 200
        assert len(own.json()["items"]) == 1

        assert client.get(f"/api/orders/{order_id}", headers=admin_headers).status_code == 200

        other = client.get(f"/api/orders/{order_id}", headers=other_buyer_headers)
        assert other.status_code == 403
        assert other.json()["error_type"] == "AuthorizationError"

    def test_get_missing_order(self, client, buyer_headers):
        response = client.get("/api/orders/999", headers=buyer_headers)
        assert response.status_code == 404


class TestOrderStatus:
    @pytest.fixture
    def order_id(self, client, buyer_headers, make_product):
        product_id = make_product(stock=5)
        return checkout(client, buyer_headers, [line(product_id, 1, "20.00")]).json()["id"]

    def set_status(self, client, headers, order_id, status):
        return client.put(f"/api/orders/{order_id}", json={"status": status}, headers=headers)

    def test_admin_walks_the_happy_path(self, client, admin_headers, buyer_headers, order_id):
        for status in ("processing", "shipped", "delivered"):
            response = self.set_status(client, admin_headers, order_id, status)
            assert response.status_code == 200
            assert response.json()["status"] == status
        assert client.get(f"/api/orders/{order_id}", headers=buyer_headers).json()["status"] == "delivered"

    def test_buyer_is_forbidden(self, client, buyer_headers, order_id):
        response = self.set_status(client, buyer_headers, order_id, "processing")
        assert response.status_code == 403
        assert client.get(f"/api/orders/{order_id}", headers=buyer_headers).json()["status"] == "pending"

    @pytest.mark.parametrize("path", [["cancelled"], ["processing", "cancelled"], ["processing", "shipped", "cancelled"]])
    def test_cancel_from_any_open_state(self, client, admin_headers, order_id, path):
        for status in path:
            assert self.set_status(client, admin_headers, order_id, status).status_code == 200

    @pytest.mark.parametrize(
        "path, bad",
        [
            ([], "shipped"),
            ([], "pending"),
            ([], "refunded"),
            (["processing", "shipped", "delivered"], "pending"),
            (["processing", "shipped", "delivered"], "cancelled"),
            (["cancelled"], "processing"),
        ],
    )
    def test_illegal_transitions(self, client, admin_headers, order_id, path, bad):
        for status in path:
            self.set_status(client, admin_headers, order_id, status)
        response = self.set_status(client, admin_headers, order_id, bad)
        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidStatusTransitionError"

    def test_missing_order(self, client, admin_headers):
        assert self.set_status(client, admin_headers, 999, "processing").status_code == 404

    def test_store_requires_admin(self, db_session):
        caller = Caller(id=1, email="asha@grocer.io", role="buyer")
        with pytest.raises(AuthorizationError):
            orders.set_status(db_session, caller, 1, "processing")

    def test_store_rejects_backwards_move(self, client, db_session, admin, order_id):
        caller = Caller(id=admin["user"]["id"], email="meera@grocer.io", role="admin")
        orders.set_status(db_session, caller, order_id, "processing")
        with pytest.raises(InvalidStatusTransitionError):
            orders.set_status(db_session, caller, order_id, "pending")
        with pytest.raises(NotFoundError):
            orders.set_status(db_session, caller, 999, "processing")
