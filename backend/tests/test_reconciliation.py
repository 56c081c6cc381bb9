"""
Reconciliation core: status monotonicity, amount checks, and the
at-most-once session and notification side effects.
"""

from conftest import admin_headers, processor_payment

from poltrona.models import AuditLog, Chair, ChairSession, Payment, PaymentStatus
from poltrona.services import payment_service


def _payment(db_session, payment_id):
    return db_session.query(Payment).filter_by(payment_id=str(payment_id)).one()


def test_approval_opens_session_and_notifies_once(db_session, make_chair, make_payment, device):
    make_chair("p1", duration_seconds=900)
    make_payment("700")

    outcome = payment_service.reconcile(processor_payment("700"), source="webhook")

    assert outcome.transitioned is True
    assert outcome.status is PaymentStatus.APPROVED
    assert outcome.session_opened is True
    assert outcome.notified is True
    payment = _payment(db_session, "700")
    assert payment.status == "approved"
    assert payment.processed is True
    assert payment.approved_at is not None
    chair = db_session.query(Chair).filter_by(chair_id="p1").one()
    assert chair.session_active is True
    assert chair.session_payment_id == "700"
    assert round((chair.session_ends_at - chair.session_started_at).total_seconds()) == 900
    assert len(device.activations()) == 1


def test_second_observation_is_already_resolved(db_session, make_chair, make_payment, device):
    make_chair("p1")
    make_payment("701")

    payment_service.reconcile(processor_payment("701"), source="webhook")
    again = payment_service.reconcile(processor_payment("701"), source="poll")

    assert again.already_resolved is True
    assert again.session_opened is False
    assert db_session.query(ChairSession).count() == 1
    assert len(device.activations()) == 1


def test_terminal_status_never_moves(db_session, make_chair, make_payment, device):
    make_chair("p1")
    make_payment("702")
    make_payment("703")

    payment_service.reconcile(processor_payment("702", "approved"), source="webhook")
    for late in ("pending", "rejected", "refunded"):
        payment_service.reconcile(processor_payment("702", late), source="poll")
    assert _payment(db_session, "702").status == "approved"

    payment_service.reconcile(processor_payment("703", "rejected"), source="poll")
    payment_service.reconcile(processor_payment("703", "approved"), source="webhook")
    rejected = _payment(db_session, "703")
    assert rejected.status == "rejected"
    assert rejected.processed is False


def test_pending_observation_changes_nothing(db_session, make_chair, make_payment, device):
    make_chair("p1")
    make_payment("704")

    outcome = payment_service.reconcile(processor_payment("704", "in_process"), source="poll")

    assert outcome.action == "pending"
    assert _payment(db_session, "704").status == "pending"
    assert db_session.query(AuditLog).count() == 0


def test_rejection_writes_audit_and_skips_device(db_session, make_chair, make_payment, device):
    make_chair("p1")
    make_payment("705")

    outcome = payment_service.reconcile(processor_payment("705", "cancelled"), source="poll")

    assert outcome.status is PaymentStatus.REJECTED
    assert device.calls == []
    entry = db_session.query(AuditLog).filter_by(action="PAYMENT_REJECTED").one()
    assert entry.actor == "system:poller"
    assert entry.payment_id == "705"


def test_amount_mismatch_rejects_payment(db_session, make_chair, make_payment, device):
    make_chair("p1", price_cents=1000)
    make_payment("706", amount_cents=1000)

    outcome = payment_service.reconcile(processor_payment("706", amount_cents=500), source="webhook")

    assert outcome.amount_mismatch is True
    assert outcome.status is PaymentStatus.REJECTED
    assert db_session.query(ChairSession).count() == 0
    assert db_session.query(AuditLog).filter_by(action="PAYMENT_AMOUNT_MISMATCH").count() == 1
    assert device.calls == []


def test_amount_within_tolerance_is_accepted(db_session, make_chair, make_payment, device):
    make_chair("p1", price_cents=1000)
    make_payment("707", amount_cents=1000)

    outcome = payment_service.reconcile(processor_payment("707", amount_cents=999), source="webhook")

    assert outcome.status is PaymentStatus.APPROVED


def test_payment_without_local_row_is_inserted_and_checked_against_price(db_session, make_chair, device):
    make_chair("p1", price_cents=1000)

    outcome = payment_service.reconcile(processor_payment("708", chair_id="p1"), source="webhook")

    assert outcome.session_opened is True
    payment = _payment(db_session, "708")
    assert payment.source == "webhook"
    assert payment.amount_cents == 1000


def test_approval_for_busy_chair_is_a_session_conflict(db_session, make_chair, make_payment, device):
    make_chair("p1")
    make_payment("709")
    make_payment("710")

    payment_service.reconcile(processor_payment("709"), source="webhook")
    second = payment_service.reconcile(processor_payment("710"), source="webhook")

    assert second.status is PaymentStatus.APPROVED
    assert second.session_opened is False
    assert _payment(db_session, "710").processed is True
    assert db_session.query(AuditLog).filter_by(action="SESSION_CONFLICT", payment_id="710").count() == 1
    assert len(device.activations()) == 1


def test_approval_for_inactive_chair_opens_nothing(db_session, make_chair, make_payment, device):
    make_chair("p1", is_active=False)
    make_payment("711")

    outcome = payment_service.reconcile(processor_payment("711"), source="poll")

    assert outcome.status is PaymentStatus.APPROVED
    assert outcome.session_opened is False
    assert db_session.query(AuditLog).filter_by(action="PAYMENT_FOR_INACTIVE_CHAIR").count() == 1
    assert device.calls == []


def test_failed_notification_keeps_session_and_renotify_delivers(client, db_session, make_chair, make_payment, device):
    make_chair("p1")
    make_payment("712")
    device.mode = "down"

    outcome = payment_service.reconcile(processor_payment("712"), source="webhook")

    assert outcome.session_opened is True
    assert outcome.notified is False
    assert db_session.query(Chair).filter_by(chair_id="p1").one().session_active is True

    device.mode = "ok"
    response = client.post('/api/payments/712/renotify', headers=admin_headers())
    assert response.status_code == 200
    assert response.json["delivered"] is True
    assert response.json["attempts"] == 4

    again = client.post('/api/payments/712/renotify', headers=admin_headers())
    assert again.json["already_notified"] is True
    assert len(device.activations()) == 4


def test_renotify_requires_approved_payment(client, db_session, make_chair, make_payment):
    make_chair("p1")
    make_payment("713")

    response = client.post('/api/payments/713/renotify', headers=admin_headers())
    missing = client.post('/api/payments/nope/renotify', headers=admin_headers())

    assert response.status_code == 412
    assert missing.status_code == 404


def test_public_status_and_history(client, db_session, make_chair, make_payment):
    make_chair("p1")
    make_payment("714", amount_cents=1000)

    status = client.get('/api/payments/714/status')
    unknown = client.get('/api/payments/nope/status')
    history = client.get('/api/payments?chair_id=p1', headers=admin_headers())
    anonymous = client.get('/api/payments')

    assert status.status_code == 200
    assert status.json["status"] == "pending"
    assert status.json["amount"] == 10.0
    assert unknown.status_code == 404
    assert unknown.json["status"] == "not_found"
    assert [p["payment_id"] for p in history.json["payments"]] == ["714"]
    assert anonymous.status_code == 401


def test_cancelled_row_is_terminal(db_session, make_chair, make_payment, device):
    make_chair("p1")
    make_payment("790", status=PaymentStatus.CANCELLED.value)

    outcome = payment_service.reconcile(processor_payment("790", "approved"), source="webhook")

    assert PaymentStatus.CANCELLED.is_terminal is True
    assert PaymentStatus.PENDING.is_terminal is False
    assert outcome.action == "already_resolved"
    assert _payment(db_session, "790").status == "cancelled"
    assert device.calls == []
