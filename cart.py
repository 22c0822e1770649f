"""
Cart Store.

One cart document per user, created on the first add and never deleted.
Prices are never taken from the client: ``totalPrice`` is recomputed from
the live product documents after every mutation.

Writes are compare-and-set on the cart's ``version`` so two concurrent
mutations cannot silently overwrite each other. The same document also
carries the per-user checkout lock used by order placement.
"""
import logging
import time
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Context, get_context
from database import now_utc, serialize_doc, session_kwargs, to_object_id
from errors import Conflict, InvalidState, NotFound, ValidationError
from schemas import AddToCartBody, Cart, CartLine, RemoveFromCartBody, UpdateCartBody

logger = logging.getLogger(__name__)

CAS_ATTEMPTS = 3

POPULATED_FIELDS = ("name", "price", "images", "image", "brand", "sizes", "category", "subcategory", "status")


def line_matches(line: dict, product_id: str, size: Optional[str]) -> bool:
    return line["productId"] == product_id and line.get("size") == size


def fetch_products(db: Database, product_ids: Iterable[str], session=None) -> Dict[str, dict]:
    """Load the given products keyed by their string id; unknown ids are skipped."""
    oids = [oid for oid in (to_object_id(pid) for pid in set(product_ids)) if oid is not None]
    if not oids:
        return {}
    docs = db["product"].find({"_id": {"$in": oids}}, **session_kwargs(session))
    return {str(doc["_id"]): doc for doc in docs}


def compute_total(lines: List[dict], products: Dict[str, dict]) -> float:
    total = 0.0
    for line in lines:
        product = products.get(line["productId"])
        if product is None:
            continue
        total += float(product.get("price") or 0) * line["quantity"]
    return round(total, 2)


def lock_is_live(cart: dict, now: Optional[float] = None) -> bool:
    lock = cart.get("checkoutLock")
    if not lock:
        return False
    return lock.get("expiresAt", 0) > (time.time() if now is None else now)


class CartStore:
    def __init__(self, db: Database, user_id: str):
        self.db = db
        self.user_id = user_id
        self.collection = db["cart"]

    # ----------------------- reads -----------------------
    def find(self, session=None) -> Optional[dict]:
        return self.collection.find_one({"user": self.user_id}, **session_kwargs(session))

    def get(self) -> dict:
        cart = self.find()
        if not cart:
            return {"user": self.user_id, "products": [], "totalPrice": 0}
        return self.populate(cart)

    def populate(self, cart: dict) -> dict:
        lines = cart.get("products", [])
        products = fetch_products(self.db, (line["productId"] for line in lines))
        populated = []
        for line in lines:
            product = products.get(line["productId"])
            if product is None:
                continue
            details = {"id": str(product["_id"])}
            details.update({field: product.get(field) for field in POPULATED_FIELDS})
            populated.append({"productId": details, "quantity": line["quantity"], "size": line.get("size")})
        view = serialize_doc({k: v for k, v in cart.items() if k not in ("products", "checkoutLock")})
        view["products"] = populated
        view["totalPrice"] = compute_total(lines, products)
        return view

    # ----------------------- mutations -----------------------
    def add(self, product_id: str, quantity: int = 1, size: Optional[str] = None) -> dict:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        oid = to_object_id(product_id)
        if oid is None or self.db["product"].find_one({"_id": oid}, {"_id": 1}) is None:
            raise NotFound("Product not found")

        def apply(lines: List[dict]) -> List[dict]:
            for line in lines:
                if line_matches(line, product_id, size):
                    line["quantity"] += quantity
                    return lines
            lines.append(CartLine(productId=product_id, quantity=quantity, size=size).model_dump())
            return lines

        return self._mutate(apply, create=True)

    def remove(self, product_id: str, size: Optional[str] = None) -> dict:
        """Drop the product's lines; every size of it unless ``size`` is given."""

        def apply(lines: List[dict]) -> List[dict]:
            if size is None:
                return [line for line in lines if line["productId"] != product_id]
            return [line for line in lines if not line_matches(line, product_id, size)]

        return self._mutate(apply)

    def update_quantity(self, product_id: str, quantity: int, size: Optional[str] = None) -> dict:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        def apply(lines: List[dict]) -> List[dict]:
            if size is not None:
                matches = [line for line in lines if line_matches(line, product_id, size)]
            else:
                matches = [line for line in lines if line["productId"] == product_id]
            if not matches:
                raise NotFound("Product not in cart")
            if len(matches) > 1:
                raise ValidationError("Product is in the cart in more than one size; specify the size")
            matches[0]["quantity"] = quantity
            return lines

        return self._mutate(apply)

    def _mutate(self, apply: Callable[[List[dict]], List[dict]], create: bool = False) -> dict:
        for _ in range(CAS_ATTEMPTS):
            cart = self.find()
            if cart is None:
                if not create:
                    raise NotFound("Cart not found")
                cart = self._create()
            if lock_is_live(cart):
                raise Conflict("Checkout in progress; the cart cannot be changed right now")

            lines = apply([dict(line) for line in cart.get("products", [])])
            products = fetch_products(self.db, (line["productId"] for line in lines))
            version = cart.get("version", 0)
            update = {
                "$set": {
                    "products": lines,
                    "totalPrice": compute_total(lines, products),
                    "version": version + 1,
                    "updated_at": now_utc(),
                }
            }
            updated = self.collection.find_one_and_update(
                {"_id": cart["_id"], "version": version},
                update,
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                return self.populate(updated)
            logger.debug("Cart %s changed underneath us, retrying", cart["_id"])
        raise Conflict("Cart was modified concurrently, please retry")

    def _create(self) -> dict:
        stamp = now_utc()
        doc = Cart(user=self.user_id).model_dump()
        doc.update(created_at=stamp, updated_at=stamp)
        try:
            self.collection.insert_one(doc)
        except DuplicateKeyError:
            return self.find()
        return doc

    # ----------------------- checkout support -----------------------
    def acquire_checkout_lock(self, lease_seconds: int) -> Tuple[dict, str]:
        """
        Take the per-user checkout lease and return the locked cart with its token.

        An expired lease is taken over. A live one means another checkout for
        this user is running.
        """
        now = time.time()
        token = uuid.uuid4().hex
        cart = self.collection.find_one_and_update(
            {
                "user": self.user_id,
                "$or": [{"checkoutLock": None}, {"checkoutLock.expiresAt": {"$lt": now}}],
            },
            {"$set": {"checkoutLock": {"token": token, "expiresAt": now + lease_seconds}}},
            return_document=ReturnDocument.AFTER,
        )
        if cart is not None:
            return cart, token
        if self.find() is None:
            raise InvalidState("Cart is empty. Cannot place order.")
        raise Conflict("Another checkout for this cart is already in progress")

    def release_checkout_lock(self, token: str) -> None:
        self.collection.update_one(
            {"user": self.user_id, "checkoutLock.token": token},
            {"$unset": {"checkoutLock": ""}},
        )

    def clear(self, cart: dict, token: str, session=None) -> bool:
        """Empty the locked cart; False if it changed since it was locked."""
        version = cart.get("version", 0)
        result = self.collection.update_one(
            {"_id": cart["_id"], "version": version, "checkoutLock.token": token},
            {
                "$set": {"products": [], "totalPrice": 0, "version": version + 1, "updated_at": now_utc()},
                "$unset": {"checkoutLock": ""},
            },
            **session_kwargs(session),
        )
        return result.modified_count == 1

    def restore(self, cart: dict) -> dict:
        """Put back the lines of a cart cleared by a checkout that then failed.

        Lines added since the clear are kept; a line for the same product and
        size gets the restored quantity added to it.
        """
        restored = cart.get("products", [])

        def apply(lines: List[dict]) -> List[dict]:
            for old in restored:
                for line in lines:
                    if line_matches(line, old["productId"], old.get("size")):
                        line["quantity"] += old["quantity"]
                        break
                else:
                    lines.append(dict(old))
            return lines

        return self._mutate(apply)


# ----------------------- Routes -----------------------
router = APIRouter(prefix="/cart", tags=["cart"])


@router.post("/addToCart")
def add_to_cart(body: AddToCartBody, ctx: Context = Depends(get_context)):
    cart = CartStore(ctx.db, ctx.user.id).add(body.productId, body.quantity, body.size)
    return {"success": True, "cart": cart}


@router.get("/getCart")
def get_cart(ctx: Context = Depends(get_context)):
    return {"success": True, "cart": CartStore(ctx.db, ctx.user.id).get()}


@router.put("/updateCart")
def update_cart(body: UpdateCartBody, ctx: Context = Depends(get_context)):
    cart = CartStore(ctx.db, ctx.user.id).update_quantity(body.productId, body.quantity, body.size)
    return {"success": True, "cart": cart}


@router.delete("/removeFromCart")
def remove_from_cart(body: RemoveFromCartBody, ctx: Context = Depends(get_context)):
    cart = CartStore(ctx.db, ctx.user.id).remove(body.productId, body.size)
    return {"success": True, "cart": cart}
