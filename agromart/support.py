import logging
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pymongo import DESCENDING

from agromart.database import create_document, get_db, serialize_doc, to_object_id, utcnow
from agromart.errors import AppError
from agromart.rate_limit import contact_limiter, newsletter_limiter, ticket_limiter
from agromart.responses import ok, pagination
from agromart.schemas import (
    AssignTicketRequest,
    CommentCreate,
    ContactMessage,
    NewsletterRequest,
    TicketCreate,
    TicketPriority,
    TicketStatus,
    TicketUpdate,
)
from agromart.security import TokenPayload, authenticate, can, require_permission, require_self_or_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/support", tags=["support"])
manage_tickets = require_permission("tickets:manage")

TICKET_TRANSITIONS = {
    "OPEN": {"PENDING", "RESOLVED"},
    "PENDING": {"OPEN", "RESOLVED"},
    "RESOLVED": {"OPEN"},
}
STATUSES = ("OPEN", "PENDING", "RESOLVED")
PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")


def check_ticket_transition(current: str, new: str) -> None:
    if current != new and new not in TICKET_TRANSITIONS.get(current, set()):
        raise AppError(
            f"Cannot change ticket status from {current} to {new}",
            400,
            "INVALID_STATUS_TRANSITION",
            {"from": current, "to": new},
        )


def present_ticket(doc: dict, user: TokenPayload) -> dict:
    ticket = serialize_doc(doc)
    if not can(user, "tickets:manage"):
        ticket["comments"] = [c for c in ticket.get("comments", []) if not c.get("is_internal")]
    return ticket


def get_ticket_doc(db, ticket_id: str) -> dict:
    ticket = db["tickets"].find_one({"_id": to_object_id(ticket_id, "ticket ID")})
    if not ticket:
        raise AppError("Ticket not found", 404, "TICKET_NOT_FOUND", {"ticket_id": ticket_id})
    return ticket


def get_ticket(db, ticket_id: str, user: TokenPayload) -> dict:
    ticket = get_ticket_doc(db, ticket_id)
    require_self_or_admin(ticket["user_id"], user)
    return ticket


def create_ticket(db, user: TokenPayload, payload: TicketCreate) -> dict:
    data = payload.model_dump()
    data.update({
        "user_id": user.user_id,
        "status": "OPEN",
        "assignee_id": None,
        "comments": [],
        "status_history": [{"status": "OPEN", "changed_by": user.user_id, "changed_at": utcnow()}],
    })
    ticket_id = create_document(db, "tickets", data)
    logger.info("Ticket %s opened by user %s", ticket_id, user.user_id)
    return get_ticket_doc(db, ticket_id)


def _set_status(db, ticket: dict, status: str, changed_by: str) -> None:
    check_ticket_transition(ticket["status"], status)
    if ticket["status"] == status:
        return
    updates = {"status": status, "updated_at": utcnow()}
    updates["resolved_at"] = utcnow() if status == "RESOLVED" else None
    db["tickets"].update_one(
        {"_id": ticket["_id"]},
        {"$set": updates,
         "$push": {"status_history": {"status": status, "changed_by": changed_by, "changed_at": utcnow()}}},
    )


def update_ticket(db, user: TokenPayload, ticket_id: str, payload: TicketUpdate) -> dict:
    ticket = get_ticket(db, ticket_id, user)
    updates = payload.model_dump(exclude_none=True)
    status = updates.pop("status", None)
    if status and not can(user, "tickets:manage"):
        raise AppError("Only support staff can change ticket status", 403, "INSUFFICIENT_PERMISSIONS")
    if status:
        _set_status(db, ticket, status, user.user_id)
    if updates:
        updates["updated_at"] = utcnow()
        db["tickets"].update_one({"_id": ticket["_id"]}, {"$set": updates})
    return get_ticket_doc(db, ticket_id)


def add_comment(db, user: TokenPayload, ticket_id: str, payload: CommentCreate) -> dict:
    ticket = get_ticket(db, ticket_id, user)
    if payload.is_internal and not can(user, "tickets:manage"):
        raise AppError("Only support staff can add internal notes", 403, "INSUFFICIENT_PERMISSIONS")
    comment = {
        "id": str(ObjectId()),
        "user_id": user.user_id,
        "message": payload.message,
        "is_internal": payload.is_internal,
        "is_staff": user.is_admin,
        "created_at": utcnow(),
    }
    db["tickets"].update_one(
        {"_id": ticket["_id"]}, {"$push": {"comments": comment}, "$set": {"updated_at": utcnow()}}
    )
    if ticket["status"] == "RESOLVED" and ticket["user_id"] == user.user_id:
        _set_status(db, ticket, "OPEN", user.user_id)
    return get_ticket_doc(db, ticket_id)


def assign_ticket(db, ticket_id: str, assignee_id: Optional[str]) -> dict:
    ticket = get_ticket_doc(db, ticket_id)
    if assignee_id:
        assignee = db["users"].find_one({"_id": to_object_id(assignee_id, "user ID")})
        if not assignee or not assignee.get("is_admin"):
            raise AppError("Tickets can only be assigned to admin users", 400, "INVALID_ASSIGNEE")
    db["tickets"].update_one(
        {"_id": ticket["_id"]}, {"$set": {"assignee_id": assignee_id, "updated_at": utcnow()}}
    )
    return get_ticket_doc(db, ticket_id)


def ticket_stats(db) -> dict:
    return {
        "total": db["tickets"].count_documents({}),
        "by_status": {s: db["tickets"].count_documents({"status": s}) for s in STATUSES},
        "by_priority": {p: db["tickets"].count_documents({"priority": p}) for p in PRIORITIES},
        "unassigned": db["tickets"].count_documents({"assignee_id": None, "status": {"$ne": "RESOLVED"}}),
    }


def submit_contact_message(db, payload: ContactMessage) -> dict:
    data = payload.model_dump()
    data["status"] = "NEW"
    message_id = create_document(db, "contact_messages", data)
    logger.info("Contact message %s received from %s", message_id, payload.email)
    return {"id": message_id}


def subscribe(db, email: str) -> str:
    existing = db["subscribers"].find_one({"email": email})
    if existing and existing.get("is_active"):
        return "You are already subscribed"
    if existing:
        db["subscribers"].update_one(
            {"_id": existing["_id"]}, {"$set": {"is_active": True, "updated_at": utcnow()}}
        )
    else:
        create_document(db, "subscribers", {"email": email, "is_active": True})
    return "Subscribed to newsletter"


def unsubscribe(db, email: str) -> None:
    result = db["subscribers"].update_one(
        {"email": email, "is_active": True}, {"$set": {"is_active": False, "updated_at": utcnow()}}
    )
    if result.matched_count == 0:
        raise AppError("Email is not subscribed", 404, "SUBSCRIBER_NOT_FOUND")


# Ticket Endpoints
@router.post("/tickets", status_code=201, dependencies=[Depends(ticket_limiter)])
def open_ticket(payload: TicketCreate, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(present_ticket(create_ticket(db, user, payload), user), "Ticket created")


@router.get("/tickets")
def my_tickets(
    status: Optional[TicketStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: TokenPayload = Depends(authenticate),
    db=Depends(get_db),
):
    filt = {"user_id": user.user_id}
    if status:
        filt["status"] = status
    total = db["tickets"].count_documents(filt)
    cursor = db["tickets"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"items": [present_ticket(t, user) for t in cursor], "pagination": pagination(total, page, limit)})


@router.get("/tickets/{ticket_id}")
def ticket_detail(ticket_id: str, user: TokenPayload = Depends(authenticate), db=Depends(get_db)):
    return ok(present_ticket(get_ticket(db, ticket_id, user), user))


@router.put("/tickets/{ticket_id}")
def edit_ticket(ticket_id: str, payload: TicketUpdate, user: TokenPayload = Depends(authenticate),
                db=Depends(get_db)):
    return ok(present_ticket(update_ticket(db, user, ticket_id, payload), user), "Ticket updated")


@router.post("/tickets/{ticket_id}/comments", status_code=201)
def comment(ticket_id: str, payload: CommentCreate, user: TokenPayload = Depends(authenticate),
            db=Depends(get_db)):
    return ok(present_ticket(add_comment(db, user, ticket_id, payload), user), "Comment added")


@router.get("/admin/tickets")
def all_tickets(
    status: Optional[TicketStatus] = None,
    priority: Optional[TicketPriority] = None,
    assignee_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: TokenPayload = Depends(manage_tickets),
    db=Depends(get_db),
):
    filt = {}
    if status:
        filt["status"] = status
    if priority:
        filt["priority"] = priority
    if assignee_id:
        filt["assignee_id"] = assignee_id
    total = db["tickets"].count_documents(filt)
    cursor = db["tickets"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"items": [present_ticket(t, admin) for t in cursor], "pagination": pagination(total, page, limit)})


@router.get("/admin/tickets/stats", dependencies=[Depends(manage_tickets)])
def stats(db=Depends(get_db)):
    return ok(ticket_stats(db))


@router.patch("/admin/tickets/{ticket_id}/assign")
def assign(ticket_id: str, payload: AssignTicketRequest, admin: TokenPayload = Depends(manage_tickets),
           db=Depends(get_db)):
    return ok(present_ticket(assign_ticket(db, ticket_id, payload.assignee_id), admin), "Ticket assigned")


@router.delete("/admin/tickets/{ticket_id}", dependencies=[Depends(manage_tickets)])
def delete_ticket(ticket_id: str, db=Depends(get_db)):
    ticket = get_ticket_doc(db, ticket_id)
    db["tickets"].delete_one({"_id": ticket["_id"]})
    return ok(message="Ticket deleted")


# Contact & Newsletter Endpoints
@router.post("/contact", status_code=201, dependencies=[Depends(contact_limiter)])
def contact(payload: ContactMessage, db=Depends(get_db)):
    return ok(submit_contact_message(db, payload), "Thank you for contacting us. We will get back to you soon.")


@router.get("/admin/messages", dependencies=[Depends(manage_tickets)])
def contact_messages(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100), db=Depends(get_db)):
    total = db["contact_messages"].count_documents({})
    cursor = db["contact_messages"].find().sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return ok({"items": [serialize_doc(m) for m in cursor], "pagination": pagination(total, page, limit)})


@router.post("/newsletter/subscribe", dependencies=[Depends(newsletter_limiter)])
def newsletter_subscribe(payload: NewsletterRequest, db=Depends(get_db)):
    return ok(message=subscribe(db, payload.email))


@router.post("/newsletter/unsubscribe", dependencies=[Depends(newsletter_limiter)])
def newsletter_unsubscribe(payload: NewsletterRequest, db=Depends(get_db)):
    unsubscribe(db, payload.email)
    return ok(message="Unsubscribed from newsletter")


@router.get("/admin/newsletter", dependencies=[Depends(manage_tickets)])
def subscribers(active: Optional[bool] = True, db=Depends(get_db)):
    filt = {} if active is None else {"is_active": active}
    return ok([serialize_doc(s) for s in db["subscribers"].find(filt).sort("created_at", DESCENDING)])
