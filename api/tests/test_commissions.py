import logging

import pytest
from fastapi import BackgroundTasks
from sqlmodel import Session, create_engine

from leadsign.errors import Conflict
from leadsign.models import Commission, User
from leadsign.routers import commissions as commissions_router
from leadsign.schemas import CommissionUpdate
from conftest import auth


def create_lead(client, users, referrer_key="referrer", name="Acme Fabrication"):
    response = client.post(
        "/api/leads",
        json={"name": name, "email": "owner@acme.example.com", "loan_amount": 100000, "loan_type": "business"},
        headers=auth(users[referrer_key]),
    )
    assert response.status_code == 201
    return response.json()


def create_commission(client, users, lead, loan_amount=100000, rate=0.5, referrer_key="referrer", **extra):
    response = client.post(
        "/api/commissions",
        json={
            "referrer_id": users[referrer_key].id,
            "lead_id": lead["id"],
            "loan_amount": loan_amount,
            "rate": rate,
            **extra,
        },
        headers=auth(users["admin"]),
    )
    assert response.status_code == 201, response.text
    return response.json()


def running_total(engine, user_id):
    with Session(engine) as session:
        return session.get(User, user_id).total_commission_earned


def set_status(client, users, commission, status, **extra):
    return client.put(
        f"/api/commissions/{commission['id']}", json={"status": status, **extra}, headers=auth(users["admin"])
    )


def test_amount_is_derived_from_loan_amount_and_rate(client, users, test_engine):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead, loan_amount=250000, rate=1.5, amount=1)
    assert commission["amount"] == 3750
    assert commission["status"] == "pending"

    updated = client.put(
        f"/api/commissions/{commission['id']}", json={"rate": 2, "loan_amount": 50000}, headers=auth(users["admin"])
    ).json()
    assert updated["amount"] == 1000
    with Session(test_engine) as session:
        stored = session.get(Commission, commission["id"])
        assert stored.amount == stored.loan_amount * stored.rate / 100


def test_create_is_admin_only_and_validates_references(client, users):
    lead = create_lead(client, users)
    payload = {"referrer_id": users["referrer"].id, "lead_id": lead["id"], "loan_amount": 1000, "rate": 1}
    assert client.post("/api/commissions", json=payload, headers=auth(users["referrer"])).status_code == 403

    bad_lead = client.post("/api/commissions", json={**payload, "lead_id": 999}, headers=auth(users["admin"]))
    assert bad_lead.status_code == 422
    assert bad_lead.json()["detail"]["errors"][0]["field"] == "lead_id"
    bad_rate = client.post("/api/commissions", json={**payload, "rate": 101}, headers=auth(users["admin"]))
    assert bad_rate.status_code == 422


def test_running_total_follows_paid_transitions(client, users, test_engine):
    referrer_id = users["referrer"].id
    lead = create_lead(client, users)

    a = create_commission(client, users, lead, loan_amount=100000, rate=0.5)
    assert a["amount"] == 500
    assert set_status(client, users, a, "paid").status_code == 200
    assert running_total(test_engine, referrer_id) == 500

    b = create_commission(client, users, lead, loan_amount=60000, rate=0.5)
    assert b["amount"] == 300
    set_status(client, users, b, "paid")
    assert running_total(test_engine, referrer_id) == 800

    # re-saving a paid commission does not count twice
    set_status(client, users, b, "paid", notes="wire sent")
    assert running_total(test_engine, referrer_id) == 800

    assert client.delete(f"/api/commissions/{a['id']}", headers=auth(users["admin"])).status_code == 200
    assert running_total(test_engine, referrer_id) == 300


def test_moves_outside_paid_touch_no_running_total(client, users, test_engine):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    set_status(client, users, commission, "approved")
    set_status(client, users, commission, "cancelled")
    set_status(client, users, commission, "pending")
    assert running_total(test_engine, users["referrer"].id) == 0


def test_leaving_paid_decrements_and_clears_paid_at(client, users, test_engine):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    paid = set_status(client, users, commission, "paid").json()
    assert paid["paid_at"] is not None
    cancelled = set_status(client, users, commission, "cancelled").json()
    assert cancelled["paid_at"] is None
    assert running_total(test_engine, users["referrer"].id) == 0


def test_created_as_paid_counts_immediately(client, users, test_engine):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead, loan_amount=20000, rate=2, status="paid")
    assert commission["paid_at"] is not None
    assert running_total(test_engine, users["referrer"].id) == 400


def test_paid_commission_amount_inputs_are_frozen(client, users):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    set_status(client, users, commission, "paid")
    response = client.put(
        f"/api/commissions/{commission['id']}", json={"rate": 5}, headers=auth(users["admin"])
    )
    assert response.status_code == 409


def test_paid_notification_is_sent_to_referrer(client, users, sent_emails):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    set_status(client, users, commission, "approved")
    assert sent_emails == []
    set_status(client, users, commission, "paid")
    assert len(sent_emails) == 1
    assert sent_emails[0]["to"] == "rita@example.com"
    assert "$500.00" in sent_emails[0]["subject"]
    assert "Acme Fabrication" in sent_emails[0]["text"]


def test_notification_failure_keeps_status_change(client, users, test_engine, monkeypatch, caplog):
    from leadsign import notifications

    def broken_send_email(*args, **kwargs):
        raise ConnectionError("smtp down")

    monkeypatch.setattr(notifications, "send_email", broken_send_email)
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    with caplog.at_level(logging.WARNING, logger="leadsign.notifications"):
        response = set_status(client, users, commission, "paid")
    assert response.status_code == 200
    assert response.json()["status"] == "paid"
    assert running_total(test_engine, users["referrer"].id) == 500
    assert "smtp down" in caplog.text


def test_simultaneous_mark_paid_counts_once(client, users, test_engine):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)

    with Session(test_engine) as first, Session(test_engine) as second:
        # the second request has already read the commission as pending
        assert second.get(Commission, commission["id"]).status == "pending"
        commissions_router.update_commission(
            commission["id"], CommissionUpdate(status="paid"), BackgroundTasks(), session=first, actor=users["admin"]
        )
        result = commissions_router.update_commission(
            commission["id"], CommissionUpdate(status="paid"), BackgroundTasks(), session=second, actor=users["admin"]
        )

    assert result["status"] == "paid"
    assert running_total(test_engine, users["referrer"].id) == 500


def test_status_claim_refuses_a_stale_status(client, users, test_engine):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    set_status(client, users, commission, "paid")

    with Session(test_engine) as session:
        stored = session.get(Commission, commission["id"])
        with pytest.raises(Conflict):
            commissions_router._claim_status(session, stored, "pending", "paid")
    assert running_total(test_engine, users["referrer"].id) == 500


def test_delete_after_unpay_elsewhere_does_not_decrement_twice(client, users, test_engine):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    set_status(client, users, commission, "paid")

    with Session(test_engine) as stale:
        assert stale.get(Commission, commission["id"]).status == "paid"
        assert set_status(client, users, commission, "cancelled").status_code == 200
        commissions_router.delete_commission(commission["id"], session=stale, actor=users["admin"])

    assert running_total(test_engine, users["referrer"].id) == 0


def test_delete_while_paid_survives_missing_referrer(client, users, test_engine, caplog):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead, referrer_key="other_referrer")
    set_status(client, users, commission, "paid")

    # the referrer row vanishes outside the API, which refuses to delete it
    unchecked = create_engine(test_engine.url)
    with unchecked.begin() as connection:
        connection.exec_driver_sql('DELETE FROM "user" WHERE id = ?', (users["other_referrer"].id,))
    unchecked.dispose()

    with caplog.at_level(logging.WARNING, logger="leadsign.routers.commissions"):
        response = client.delete(f"/api/commissions/{commission['id']}", headers=auth(users["admin"]))
    assert response.status_code == 200
    assert "not found" in caplog.text
    with Session(test_engine) as session:
        assert session.get(Commission, commission["id"]) is None


def test_list_visibility_and_totals(client, users):
    lead = create_lead(client, users)
    pending = create_commission(client, users, lead, loan_amount=10000, rate=1)
    approved = create_commission(client, users, lead, loan_amount=20000, rate=1)
    paid = create_commission(client, users, lead, loan_amount=30000, rate=1)
    create_commission(client, users, lead, loan_amount=50000, rate=1, referrer_key="other_referrer")
    set_status(client, users, approved, "approved")
    set_status(client, users, paid, "paid")

    mine = client.get("/api/commissions", headers=auth(users["referrer"])).json()
    assert mine["count"] == 3
    assert mine["totals"] == {"total": 600, "pending": 100, "approved": 200, "paid": 300}

    everything = client.get("/api/commissions", headers=auth(users["admin"])).json()
    assert everything["count"] == 4
    assert everything["totals"]["total"] == 1100
    assert everything["totals"]["pending"] == 600

    only_pending = client.get("/api/commissions?status=pending", headers=auth(users["admin"])).json()
    assert only_pending["totals"] == {"total": 600, "pending": 600, "approved": 0, "paid": 0}
    assert only_pending["count"] == 2
    assert pending["id"] in {c["id"] for c in only_pending["commissions"]}


def test_get_commission_access(client, users):
    lead = create_lead(client, users)
    commission = create_commission(client, users, lead)
    assert client.get(f"/api/commissions/{commission['id']}", headers=auth(users["referrer"])).status_code == 200
    assert client.get(f"/api/commissions/{commission['id']}", headers=auth(users["other_referrer"])).status_code == 403
    assert client.get("/api/commissions/999", headers=auth(users["admin"])).status_code == 404
