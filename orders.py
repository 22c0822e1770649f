"""
Orders: the pending (staging) order, order placement and the status machine.

Placing an order turns the caller's cart plus a shipping address into an
immutable order document. Item names, prices and images and the address are
copied into the order at that moment; later edits to products or saved
addresses never reach historical orders.

Placement for one user is serialized by the checkout lock on the cart.
The commit (stock deduction, cart clear, order insert, pending order removal)
runs in a MongoDB transaction when ``USE_TRANSACTIONS`` is on. Otherwise
each step that already happened is undone if a later one fails.
"""
import logging
import random
import time
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from addresses import AddressBook, validate_address
from auth import Context, get_admin_context, get_context
from cart import CartStore, compute_total, fetch_products
from config import Settings
from database import create_document, get_documents, now_utc, serialize_doc, session_kwargs, to_object_id, transaction
from errors import Conflict, Forbidden, InvalidState, NotFound, SecurityError, ValidationError
from schemas import (
    ORDER_STATUSES,
    AddressBody,
    CODOrderBody,
    GatewayPayment,
    Order,
    OrderItem,
    PendingOrder,
    StatusChange,
)

logger = logging.getLogger(__name__)

ORDER_ID_ATTEMPTS = 5
STOCK_CAS_ATTEMPTS = 5

# Terminal states map to an empty set.
STATUS_TRANSITIONS = {
    "pending": {"shipping", "cancelled"},
    "shipping": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}


def generate_custom_order_id() -> str:
    random_part = random.randint(1000, 9999)
    return f"ORD-{str(int(time.time() * 1000))[-6:]}-{random_part}"


# ----------------------- Pending order -----------------------
class PendingOrders:
    """The single per-user staging record that holds the chosen shipping address."""

    def __init__(self, db: Database, user_id: str, default_country: str = "India"):
        self.user_id = user_id
        self.default_country = default_country
        self.collection = db["pendingorder"]

    def find(self, session=None) -> Optional[dict]:
        return self.collection.find_one({"user": self.user_id}, **session_kwargs(session))

    def save_shipping_address(self, fields: dict) -> dict:
        address = validate_address(fields, self.default_country)
        on_insert = PendingOrder(user=self.user_id).model_dump(exclude={"shippingAddress"})
        on_insert["created_at"] = now_utc()
        update = {
            "$set": {"shippingAddress": address, "updated_at": now_utc()},
            "$setOnInsert": on_insert,
        }
        try:
            self.collection.update_one({"user": self.user_id}, update, upsert=True)
        except DuplicateKeyError:
            # lost the upsert race; the record exists now
            self.collection.update_one({"user": self.user_id}, {"$set": update["$set"]})
        return address

    def shipping_address(self) -> dict:
        pending = self.find()
        if not pending or not pending.get("shippingAddress"):
            raise NotFound("No saved address found")
        return pending["shippingAddress"]

    def discard(self, session=None) -> None:
        self.collection.delete_one({"user": self.user_id}, **session_kwargs(session))


# ----------------------- Stock -----------------------
def primary_image(product: dict) -> Optional[str]:
    if product.get("image"):
        return product["image"]
    images = product.get("images") or []
    for image in images:
        if image.get("isPrimary"):
            return image.get("url")
    return images[0].get("url") if images else None


def snapshot_items(lines: List[dict], products: Dict[str, dict]) -> List[dict]:
    """Copy each cart line into an order item, checking availability on the way."""
    items = []
    for line in lines:
        product = products.get(line["productId"])
        if product is None:
            raise NotFound(f"Product not found: {line['productId']}")
        name = product.get("name", "")
        if product.get("status") == "Out of Stock":
            raise InvalidState(f'"{name}" is out of stock')
        size = line.get("size")
        if size is not None:
            entry = next((s for s in product.get("sizes", []) if s.get("size") == size), None)
            if entry is None:
                raise InvalidState(f'Size "{size}" not available for product "{name}"')
            if entry.get("stock", 0) < line["quantity"]:
                raise InvalidState(
                    f'Insufficient stock for "{name}" - Size {size}. Available: {entry.get("stock", 0)}'
                )
        item = OrderItem(
            productId=line["productId"],
            name=name,
            price=float(product.get("price") or 0),
            quantity=line["quantity"],
            size=size,
            image=primary_image(product),
        )
        items.append(item.model_dump())
    return items


class StockLedger:
    """Per-size stock moves, each a compare-and-set on the product's ``sizes`` array."""

    def __init__(self, db: Database):
        self.products = db["product"]

    def _adjust(self, product_id: str, size: str, delta: int, session=None) -> None:
        oid = to_object_id(product_id)
        for _ in range(STOCK_CAS_ATTEMPTS):
            product = self.products.find_one({"_id": oid}, **session_kwargs(session))
            if product is None:
                raise NotFound(f"Product not found: {product_id}")
            sizes = product.get("sizes", [])
            new_sizes = [dict(s) for s in sizes]
            entry = next((s for s in new_sizes if s.get("size") == size), None)
            if entry is None:
                raise InvalidState(f'Size "{size}" not available for product "{product.get("name")}"')
            if entry.get("stock", 0) + delta < 0:
                raise InvalidState(
                    f'Insufficient stock for "{product.get("name")}" - Size {size}. '
                    f'Available: {entry.get("stock", 0)}'
                )
            entry["stock"] = entry.get("stock", 0) + delta
            result = self.products.update_one(
                {"_id": oid, "sizes": sizes},
                {"$set": {"sizes": new_sizes}},
                **session_kwargs(session),
            )
            if result.modified_count == 1:
                return
        raise Conflict("Stock changed concurrently, please retry")

    def reserve(self, lines: List[dict], session=None) -> List[tuple]:
        """Deduct stock for every sized line; undo what was taken if one fails."""
        taken = []
        try:
            for line in lines:
                if line.get("size") is None:
                    continue
                self._adjust(line["productId"], line["size"], -line["quantity"], session)
                taken.append((line["productId"], line["size"], line["quantity"]))
        except Exception:
            if session is None:
                self.release(taken)
            raise
        return taken

    def release(self, taken: List[tuple]) -> None:
        for product_id, size, quantity in taken:
            try:
                self._adjust(product_id, size, quantity)
            except Exception:
                logger.exception("Could not return %s x size %s of product %s to stock", quantity, size, product_id)


# ----------------------- Order finalizer -----------------------
class OrderFinalizer:
    def __init__(self, db: Database, settings: Settings, user_id: str):
        self.db = db
        self.settings = settings
        self.user_id = user_id
        self.carts = CartStore(db, user_id)
        self.pending = PendingOrders(db, user_id, settings.default_country)
        self.stock = StockLedger(db)

    def place_cod_order(self, client_total: Optional[float] = None) -> dict:
        order = self._checkout(
            payment_method="COD",
            payment_status="pending",
            client_total=client_total,
        )
        logger.info("COD order %s placed for user %s", order["customOrderId"], self.user_id)
        return order

    def place_paid_order(
        self,
        payment: GatewayPayment,
        payment_method: str,
        shipping_address: dict,
        client_total: Optional[float] = None,
        captured_amount: Optional[int] = None,
    ) -> dict:
        """Turn the cart into a paid order.

        ``captured_amount`` is what the gateway reports as paid, in the
        currency's smallest unit; when given it must equal the order total.
        """
        return self._checkout(
            payment_method=payment_method,
            payment_status="paid",
            payment=payment,
            shipping_address=shipping_address,
            client_total=client_total,
            captured_amount=captured_amount,
        )

    def find_paid_order(self, gateway_payment_id: str) -> Optional[dict]:
        """The order already settled by this gateway payment, if any.

        A payment settles exactly one order; one owned by another user means
        the payment confirmation is being reused.
        """
        order = self.db["order"].find_one({"payment.gatewayPaymentId": gateway_payment_id})
        if order is not None and order.get("user") != self.user_id:
            logger.warning(
                "User %s presented payment %s already settled for another account",
                self.user_id,
                gateway_payment_id,
            )
            raise SecurityError("Payment already used for another order")
        return order

    def _checkout(
        self,
        payment_method: str,
        payment_status: str,
        payment: Optional[GatewayPayment] = None,
        shipping_address: Optional[dict] = None,
        client_total: Optional[float] = None,
        captured_amount: Optional[int] = None,
    ) -> dict:
        cart, token = self.carts.acquire_checkout_lock(self.settings.checkout_lock_seconds)
        try:
            if payment is not None:
                existing = self.find_paid_order(payment.gatewayPaymentId)
                if existing is not None:
                    self.carts.release_checkout_lock(token)
                    return existing

            lines = cart.get("products", [])
            if not lines:
                raise InvalidState("Cart is empty. Cannot place order.")

            if shipping_address is None:
                pending = self.pending.find()
                if not pending or not pending.get("shippingAddress"):
                    raise InvalidState("No saved address found")
                shipping_address = pending["shippingAddress"]

            products = fetch_products(self.db, (line["productId"] for line in lines))
            items = snapshot_items(lines, products)
            subtotal = compute_total(lines, products)
            self._check_client_total(client_total, subtotal)
            shipping = self.settings.shipping_charge
            delivery = self.settings.delivery_charge
            total = round(subtotal + shipping + delivery, 2)
            if captured_amount is not None:
                self._check_captured_amount(captured_amount, total)

            order = Order(
                user=self.user_id,
                customOrderId=generate_custom_order_id(),
                items=items,
                shippingAddress=shipping_address,
                subtotal=subtotal,
                shippingCharge=shipping,
                deliveryCharge=delivery,
                totalPrice=total,
                status="pending",
                paymentMethod=payment_method,
                paymentStatus=payment_status,
                payment=payment,
            )
            return self._commit(cart, token, lines, order)
        except Exception:
            self.carts.release_checkout_lock(token)
            raise

    def _check_client_total(self, client_total: Optional[float], subtotal: float) -> None:
        if client_total is None:
            return
        if abs(client_total - subtotal) > self.settings.total_tolerance:
            logger.warning(
                "Client total %.2f differs from computed subtotal %.2f for user %s; using computed value",
                client_total,
                subtotal,
                self.user_id,
            )

    def _check_captured_amount(self, captured_amount: int, total: float) -> None:
        expected = int(round(total * 100))
        if captured_amount != expected:
            logger.warning(
                "Gateway captured %s but order total for user %s is %s",
                captured_amount,
                self.user_id,
                expected,
            )
            raise SecurityError("Paid amount does not match the order total")

    def _commit(self, cart: dict, token: str, lines: List[dict], order: Order) -> dict:
        if self.settings.use_transactions:
            with transaction(self.db, True) as session:
                self.stock.reserve(lines, session)
                return self._write(cart, token, order, session)

        taken = self.stock.reserve(lines)
        try:
            return self._write(cart, token, order)
        except Exception:
            self.stock.release(taken)
            raise

    def _write(self, cart: dict, token: str, order: Order, session=None) -> dict:
        if not self.carts.clear(cart, token, session):
            raise Conflict("Cart changed during checkout, please retry")
        try:
            order_id = self._insert_order(order, session)
        except Exception:
            if session is None:
                try:
                    self.carts.restore(cart)
                except Exception:
                    logger.exception("Could not restore cart of user %s after a failed checkout", self.user_id)
            raise
        self.pending.discard(session)
        return self.db["order"].find_one({"_id": order_id}, **session_kwargs(session))

    def _insert_order(self, order: Order, session=None):
        orders = self.db["order"]
        for attempt in range(ORDER_ID_ATTEMPTS):
            while orders.find_one({"customOrderId": order.customOrderId}, {"_id": 1}, **session_kwargs(session)):
                order.customOrderId = generate_custom_order_id()
            try:
                return to_object_id(create_document("order", order, database=self.db, session=session))
            except DuplicateKeyError:
                if order.payment is not None and orders.find_one(
                    {"payment.gatewayPaymentId": order.payment.gatewayPaymentId}, {"_id": 1}
                ):
                    raise SecurityError("Payment already used for another order")
                if session is not None or attempt == ORDER_ID_ATTEMPTS - 1:
                    raise
                order.customOrderId = generate_custom_order_id()


# ----------------------- Status machine -----------------------
def order_filter(order_ref: str) -> dict:
    oid = to_object_id(order_ref)
    if oid is not None:
        return {"_id": oid}
    return {"customOrderId": order_ref}


def update_order_status(db: Database, order_ref: str, new_status: str) -> dict:
    """Move an order to ``new_status``; only ``status`` is ever written."""
    if new_status not in ORDER_STATUSES:
        raise ValidationError("Invalid status value", details={"allowed": list(ORDER_STATUSES)})

    query = order_filter(order_ref)
    order = db["order"].find_one(query)
    if not order:
        raise NotFound("Order not found")

    current = order.get("status", "pending")
    if new_status == current:
        return order
    if new_status not in STATUS_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot change order status from '{current}' to '{new_status}'")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": {"status": new_status, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Order status changed concurrently, please retry")
    logger.info("Order %s status %s -> %s", order.get("customOrderId"), current, new_status)
    return updated


# ----------------------- Listing -----------------------
def user_orders(db: Database, user_id: str) -> List[dict]:
    return get_documents("order", {"user": user_id}, database=db, sort=[("created_at", DESCENDING)])


def all_orders(db: Database, status: Optional[str] = None) -> List[dict]:
    query = {}
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError("Invalid status value", details={"allowed": list(ORDER_STATUSES)})
        query["status"] = status
    orders = get_documents("order", query, database=db, sort=[("created_at", DESCENDING)])

    user_ids = {to_object_id(o.get("user")) for o in orders} - {None}
    users = {}
    if user_ids:
        for user in db["user"].find({"_id": {"$in": list(user_ids)}}, {"email": 1, "name": 1}):
            users[str(user["_id"])] = user
    for order in orders:
        user = users.get(order.get("user"))
        order["customer"] = {
            "id": order.get("user"),
            "email": user.get("email") if user else None,
            "name": user.get("name") if user else None,
        }
    return orders


def get_order(db: Database, order_ref: str, user) -> dict:
    order = db["order"].find_one(order_filter(order_ref))
    if not order:
        raise NotFound("Order not found")
    if order.get("user") != user.id and not user.is_admin:
        raise Forbidden("Forbidden: Access denied")
    return order


# ----------------------- Routes -----------------------
router = APIRouter(prefix="/order", tags=["orders"])


def _pending(ctx: Context) -> PendingOrders:
    return PendingOrders(ctx.db, ctx.user.id, ctx.settings.default_country)


@router.post("/shippingAddress")
def save_shipping_address(body: AddressBody, ctx: Context = Depends(get_context)):
    address = _pending(ctx).save_shipping_address(body.model_dump())
    return {"success": True, "message": "Shipping address saved successfully", "shippingAddress": address}


@router.get("/shippingAddress")
def get_shipping_address(ctx: Context = Depends(get_context)):
    return {"success": True, "shippingAddress": _pending(ctx).shipping_address()}


@router.post("/selectAddress/{address_id}")
def select_address(address_id: str, ctx: Context = Depends(get_context)):
    saved = AddressBook(ctx.db, ctx.user.id, ctx.settings.default_country).get(address_id)
    fields = {k: v for k, v in saved.items() if k not in ("_id", "isDefault")}
    address = _pending(ctx).save_shipping_address(fields)
    return {"success": True, "message": "Shipping address saved successfully", "shippingAddress": address}


@router.post("/cod", status_code=201)
def place_cod_order(body: CODOrderBody = CODOrderBody(), ctx: Context = Depends(get_context)):
    order = OrderFinalizer(ctx.db, ctx.settings, ctx.user.id).place_cod_order(body.totalPrice)
    return {"success": True, "message": "COD order placed successfully", "order": serialize_doc(order)}


@router.get("/my-orders")
def my_orders(ctx: Context = Depends(get_context)):
    orders = [serialize_doc(o) for o in user_orders(ctx.db, ctx.user.id)]
    return {"success": True, "totalOrders": len(orders), "orders": orders}


@router.get("/all-orders")
def list_all_orders(status: Optional[str] = None, ctx: Context = Depends(get_admin_context)):
    orders = [serialize_doc(o) for o in all_orders(ctx.db, status)]
    message = "No orders yet" if not orders else "All orders fetched successfully"
    return {"success": True, "message": message, "totalOrders": len(orders), "orders": orders}


@router.put("/status/{order_id}")
def change_order_status(order_id: str, body: StatusChange, ctx: Context = Depends(get_admin_context)):
    updated = update_order_status(ctx.db, order_id, body.status)
    return {
        "success": True,
        "message": f"Order status updated to {updated['status']}",
        "updatedOrder": serialize_doc(updated),
    }


@router.get("/{order_ref}")
def order_detail(order_ref: str, ctx: Context = Depends(get_context)):
    return {"success": True, "order": serialize_doc(get_order(ctx.db, order_ref, ctx.user))}
