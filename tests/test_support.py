import pytest

from agromart import config, support
from agromart.errors import AppError
from agromart.schemas import CommentCreate, TicketCreate, TicketUpdate
from agromart.security import TokenPayload


def token_for(user_doc):
    return TokenPayload(user_id=str(user_doc["_id"]), email=user_doc["email"], is_admin=user_doc.get("is_admin", False))


def open_ticket(db, user_doc, priority="HIGH"):
    payload = TicketCreate(subject="Damaged sprayer", description="The nozzle arrived cracked.", priority=priority)
    return support.create_ticket(db, token_for(user_doc), payload)


@pytest.mark.parametrize("current,new", [
    ("OPEN", "PENDING"),
    ("OPEN", "RESOLVED"),
    ("PENDING", "OPEN"),
    ("RESOLVED", "OPEN"),
    ("OPEN", "OPEN"),
])
def test_allowed_ticket_transitions(current, new):
    support.check_ticket_transition(current, new)


def test_resolved_ticket_cannot_go_pending():
    with pytest.raises(AppError) as exc:
        support.check_ticket_transition("RESOLVED", "PENDING")
    assert exc.value.code == "INVALID_STATUS_TRANSITION"


def test_new_ticket_is_open_with_history(db, user):
    ticket = open_ticket(db, user)
    assert ticket["status"] == "OPEN"
    assert ticket["comments"] == []
    assert [h["status"] for h in ticket["status_history"]] == ["OPEN"]


def test_customer_cannot_change_status(db, user):
    ticket = open_ticket(db, user)
    with pytest.raises(AppError) as exc:
        support.update_ticket(db, token_for(user), str(ticket["_id"]), TicketUpdate(status="RESOLVED"))
    assert exc.value.status_code == 403


def test_admin_resolves_and_owner_comment_reopens(db, user, admin):
    ticket_id = str(open_ticket(db, user)["_id"])

    resolved = support.update_ticket(db, token_for(admin), ticket_id, TicketUpdate(status="RESOLVED"))
    assert resolved["status"] == "RESOLVED"
    assert resolved["resolved_at"] is not None

    reopened = support.add_comment(db, token_for(user), ticket_id, CommentCreate(message="Still broken"))
    assert reopened["status"] == "OPEN"
    assert [h["status"] for h in reopened["status_history"]] == ["OPEN", "RESOLVED", "OPEN"]


def test_internal_notes_are_hidden_from_customer(client, db, user, admin, auth_header):
    ticket_id = str(open_ticket(db, user)["_id"])
    support.add_comment(db, token_for(admin), ticket_id, CommentCreate(message="Check courier claim", is_internal=True))
    support.add_comment(db, token_for(admin), ticket_id, CommentCreate(message="Replacement on the way"))

    customer_view = client.get(f"/api/support/tickets/{ticket_id}", headers=auth_header(user)).json()["data"]
    admin_view = client.get(f"/api/support/tickets/{ticket_id}", headers=auth_header(admin)).json()["data"]

    assert [c["message"] for c in customer_view["comments"]] == ["Replacement on the way"]
    assert len(admin_view["comments"]) == 2


def test_customer_cannot_write_internal_note(db, user):
    ticket_id = str(open_ticket(db, user)["_id"])
    with pytest.raises(AppError) as exc:
        support.add_comment(db, token_for(user), ticket_id, CommentCreate(message="psst", is_internal=True))
    assert exc.value.code == "INSUFFICIENT_PERMISSIONS"


def test_other_customer_cannot_read_ticket(client, db, user, make_user, auth_header):
    ticket_id = str(open_ticket(db, user)["_id"])
    res = client.get(f"/api/support/tickets/{ticket_id}", headers=auth_header(make_user()))
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "NOT_OWNER"


def test_assign_only_to_admins(db, user, admin):
    ticket_id = str(open_ticket(db, user)["_id"])
    with pytest.raises(AppError) as exc:
        support.assign_ticket(db, ticket_id, str(user["_id"]))
    assert exc.value.code == "INVALID_ASSIGNEE"

    assigned = support.assign_ticket(db, ticket_id, str(admin["_id"]))
    assert assigned["assignee_id"] == str(admin["_id"])


def test_ticket_stats(db, user):
    open_ticket(db, user, "HIGH")
    open_ticket(db, user, "LOW")
    stats = support.ticket_stats(db)
    assert stats["total"] == 2
    assert stats["by_status"]["OPEN"] == 2
    assert stats["by_priority"]["HIGH"] == 1
    assert stats["unassigned"] == 2


def test_contact_message(client, db):
    res = client.post("/api/support/contact", json={
        "name": "Meena", "email": "meena@example.com", "subject": "Bulk order",
        "message": "Do you ship 500 kg of urea to Nashik?",
    })
    assert res.status_code == 201
    assert db["contact_messages"].find_one()["status"] == "NEW"


def test_newsletter_subscribe_and_unsubscribe(client, monkeypatch):
    monkeypatch.setattr(config, "RATE_LIMIT_ENABLED", False)
    body = {"email": "Grower@Example.com"}
    assert client.post("/api/support/newsletter/subscribe", json=body).json()["message"] == "Subscribed to newsletter"
    assert client.post("/api/support/newsletter/subscribe", json=body).json()["message"] == (
        "You are already subscribed"
    )
    assert client.post("/api/support/newsletter/unsubscribe", json=body).status_code == 200

    res = client.post("/api/support/newsletter/unsubscribe", json=body)
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "SUBSCRIBER_NOT_FOUND"
