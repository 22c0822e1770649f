"""
Saved shipping addresses (the user's address book).

Addresses live embedded in the ``user`` document. The first one saved
becomes the default. Orders never reference these entries; they get a copy.
"""
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends
from pymongo.database import Database

from auth import Context, get_context
from database import now_utc, serialize_doc, to_object_id
from errors import MissingFieldsError, NotFound
from schemas import ADDRESS_REQUIRED_FIELDS, Address, AddressBody


def validate_address(fields: Optional[dict], default_country: str) -> dict:
    """Check the required address fields and return a clean address dict.

    Raises MissingFieldsError naming every required field that is absent or blank.
    """
    fields = fields or {}
    cleaned = {k: v.strip() if isinstance(v, str) else v for k, v in fields.items()}
    missing = [name for name in ADDRESS_REQUIRED_FIELDS if not cleaned.get(name)]
    if missing:
        raise MissingFieldsError(missing)
    address = Address(
        fullName=cleaned["fullName"],
        phoneNumber=cleaned["phoneNumber"],
        line1=cleaned["line1"],
        line2=cleaned.get("line2") or None,
        city=cleaned["city"],
        state=cleaned["state"],
        postalCode=cleaned["postalCode"],
        country=cleaned.get("country") or default_country,
    )
    return address.model_dump()


class AddressBook:
    def __init__(self, db: Database, user_id: str, default_country: str = "India"):
        self.db = db
        self.user_id = user_id
        self.default_country = default_country

    def _user(self) -> dict:
        oid = to_object_id(self.user_id)
        user = self.db["user"].find_one({"_id": oid}) if oid is not None else None
        if not user:
            raise NotFound("User not found")
        return user

    def _save(self, user: dict, addresses: List[dict]) -> List[dict]:
        self.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"addresses": addresses, "updated_at": now_utc()}},
        )
        return addresses

    def list(self) -> List[dict]:
        return self._user().get("addresses", [])

    def get(self, address_id: str) -> dict:
        for address in self.list():
            if str(address.get("_id")) == address_id:
                return address
        raise NotFound("Address not found")

    def add(self, fields: dict) -> List[dict]:
        user = self._user()
        addresses = list(user.get("addresses", []))
        entry = validate_address(fields, self.default_country)
        entry["_id"] = ObjectId()
        entry["isDefault"] = len(addresses) == 0
        addresses.append(entry)
        return self._save(user, addresses)

    def delete(self, address_id: str) -> List[dict]:
        user = self._user()
        addresses = user.get("addresses", [])
        remaining = [a for a in addresses if str(a.get("_id")) != address_id]
        if len(remaining) == len(addresses):
            raise NotFound("Address not found")
        if remaining and not any(a.get("isDefault") for a in remaining):
            remaining[0]["isDefault"] = True
        return self._save(user, remaining)

    def set_default(self, address_id: str) -> List[dict]:
        user = self._user()
        addresses = user.get("addresses", [])
        if not any(str(a.get("_id")) == address_id for a in addresses):
            raise NotFound("Address not found")
        for address in addresses:
            address["isDefault"] = str(address.get("_id")) == address_id
        return self._save(user, addresses)


def _as_list(addresses: List[dict]) -> List[dict]:
    return [serialize_doc(a) for a in addresses]


# ----------------------- Routes -----------------------
router = APIRouter(prefix="/user", tags=["addresses"])


def _book(ctx: Context) -> AddressBook:
    return AddressBook(ctx.db, ctx.user.id, ctx.settings.default_country)


@router.get("/getAddresses")
def get_addresses(ctx: Context = Depends(get_context)):
    return {"success": True, "addresses": _as_list(_book(ctx).list())}


@router.post("/saveAddress", status_code=201)
def save_address(body: AddressBody, ctx: Context = Depends(get_context)):
    addresses = _book(ctx).add(body.model_dump())
    return {"success": True, "message": "Address added successfully", "addresses": _as_list(addresses)}


@router.delete("/address/{address_id}")
def delete_address(address_id: str, ctx: Context = Depends(get_context)):
    addresses = _book(ctx).delete(address_id)
    return {"success": True, "message": "Address deleted successfully", "addresses": _as_list(addresses)}


@router.put("/address/{address_id}/default")
def set_default_address(address_id: str, ctx: Context = Depends(get_context)):
    return {"success": True, "addresses": _as_list(_book(ctx).set_default(address_id))}
