from fastapi import APIRouter, Depends
from pymongo import DESCENDING

from agromart.database import create_document, get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError
from agromart.responses import ok
from agromart.schemas import Address, AddressUpdate
from agromart.security import TokenPayload, authenticate

router = APIRouter(prefix="/api/users/addresses", tags=["addresses"])


def get_address_doc(db, user_id: str, address_id: str) -> dict:
    address = db["addresses"].find_one({"_id": to_object_id(address_id, "address ID"), "user_id": user_id})
    if not address:
        raise AppError("Address not found", 404, "ADDRESS_NOT_FOUND", {"address_id": address_id})
    return address


def list_addresses(db, user_id: str) -> list:
    cursor = db["addresses"].find({"user_id": user_id}).sort([("is_default", DESCENDING), ("created_at", DESCENDING)])
    return [serialize_doc(a) for a in cursor]


def _clear_default(db, user_id: str, keep_id=None) -> None:
    filt = {"user_id": user_id, "is_default": True}
    if keep_id is not None:
        filt["_id"] = {"$ne": keep_id}
    db["addresses"].update_many(filt, {"$set": {"is_default": False, "updated_at": utcnow()}})


def create_address(db, user_id: str, payload: Address) -> dict:
    data = payload.model_dump()
    data["user_id"] = user_id
    if db["addresses"].count_documents({"user_id": user_id}) == 0:
        data["is_default"] = True
    address_id = create_document(db, "addresses", data)
    if data["is_default"]:
        _clear_default(db, user_id, keep_id=to_object_id(address_id))
    return serialize_doc(get_address_doc(db, user_id, address_id))


def update_address(db, user_id: str, address_id: str, payload: AddressUpdate) -> dict:
    address = get_address_doc(db, user_id, address_id)
    updates = payload.model_dump(exclude_none=True)
    if updates.get("is_default") is False and address.get("is_default"):
        updates.pop("is_default")
    if updates:
        updates["updated_at"] = utcnow()
        db["addresses"].update_one({"_id": address["_id"]}, {"$set": updates})
        if updates.get("is_default"):
            _clear_default(db, user_id, keep_id=address["_id"])
    return serialize_doc(get_address_doc(db, user_id, address_id))


def set_default_address(db, user_id: str, address_id: str) -> dict:
    address = get_address_doc(db, user_id, address_id)
    db["addresses"].update_one({"_id": address["_id"]}, {"$set": {"is_default": True, "updated_at": utcnow()}})
    _clear_default(db, user_id, keep_id=address["_id"])
    return serialize_doc(get_address_doc(db, user_id, address_id))


def delete_address(db, user_id: str, address_id: str) -> None:
    address = get_address_doc(db, user_id, address_id)
    db["addresses"].delete_one({"_id": address["_id"]})
    if address.get("is_default"):
        latest = db["addresses"].find_one({"user_id": user_id}, sort=[("created_at", DESCENDING)])
        if latest:
            db["addresses"].update_one({"_id": latest["_id"]}, {"$set": {"is_default": True}})


# Address Endpoints
@router.get("")
def addresses(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(list_addresses(db, user.user_id))


@router.get("/default")
def default_address(user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    address = db["addresses"].find_one({"user_id": user.user_id, "is_default": True})
    if not address:
        raise AppError("No default address set", 404, "ADDRESS_NOT_FOUND")
    return ok(serialize_doc(address))


@router.get("/{address_id}")
def address_detail(address_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(serialize_doc(get_address_doc(db, user.user_id, address_id)))


@router.post("", status_code=201)
def add_address(payload: Address, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(create_address(db, user.user_id, payload), "Address added")


@router.put("/{address_id}")
def edit_address(address_id: str, payload: AddressUpdate, user: TokenPayload = Depends(authenticate),
                 db=Depends(get_db)):
    return ok(update_address(db, user.user_id, address_id, payload), "Address updated")


@router.put("/{address_id}/default")
def make_default(address_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(set_default_address(db, user.user_id, address_id), "Default address updated")


@router.delete("/{address_id}")
def remove_address(address_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    delete_address(db, user.user_id, address_id)
    return ok(message="Address deleted")
