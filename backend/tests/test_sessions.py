from datetime import timedelta

from poltrona.models import AuditLog, Chair, ChairSession
from poltrona.services import session_service
from poltrona.time_utils import utcnow


def _busy_chair(make_chair, make_payment, db_session, chair_id, payment_id, *, ends_in, ip="192.168.0.50"):
    now = utcnow()
    chair = make_chair(
        chair_id,
        ip_address=ip,
        session_active=True,
        session_started_at=now - timedelta(seconds=900) + timedelta(seconds=ends_in),
        session_ends_at=now + timedelta(seconds=ends_in),
        session_payment_id=payment_id,
        intent_payment_id=payment_id,
        intent_qr_code="00020126PIX",
        intent_amount_cents=1000,
        intent_created_at=now - timedelta(minutes=20),
        intent_expires_at=now + timedelta(minutes=10),
    )
    make_payment(payment_id, chair_id, status="approved", processed=True)
    db_session.add(ChairSession(
        chair_id=chair_id,
        payment_id=payment_id,
        started_at=chair.session_started_at,
        expected_end_at=chair.session_ends_at,
        is_active=True,
    ))
    db_session.commit()
    return chair


def test_expiry_clears_lapsed_session_only(db_session, make_chair, make_payment):
    _busy_chair(make_chair, make_payment, db_session, "p1", "901", ends_in=-5)
    _busy_chair(make_chair, make_payment, db_session, "p2", "902", ends_in=300, ip="192.168.0.51")

    expired = session_service.expire_sessions()

    assert expired == ["p1"]
    p1 = db_session.query(Chair).filter_by(chair_id="p1").one()
    assert p1.session_active is False
    assert p1.session_started_at is None
    assert p1.session_ends_at is None
    assert p1.session_payment_id is None
    assert p1.intent_payment_id is None
    assert p1.intent_qr_code is None
    assert p1.public_payment_url == "https://pay.example.test/pagar/p1"

    p2 = db_session.query(Chair).filter_by(chair_id="p2").one()
    assert p2.session_active is True
    assert p2.session_payment_id == "902"
    assert p2.intent_payment_id == "902"

    closed = db_session.query(ChairSession).filter_by(payment_id="901").one()
    assert closed.is_active is False
    assert closed.ended_at is not None
    assert db_session.query(ChairSession).filter_by(payment_id="902").one().is_active is True

    entry = db_session.query(AuditLog).filter_by(action="SESSION_EXPIRED").one()
    assert entry.actor == "system:expiry"
    assert entry.old_values["session_payment_id"] == "901"


def test_expiry_is_idempotent(db_session, make_chair, make_payment):
    _busy_chair(make_chair, make_payment, db_session, "p1", "903", ends_in=-5)

    assert session_service.expire_sessions() == ["p1"]
    assert session_service.expire_sessions() == []
    assert db_session.query(AuditLog).filter_by(action="SESSION_EXPIRED").count() == 1


def test_open_session_happens_once_per_payment(db_session, make_chair, make_payment):
    make_chair("p1", duration_seconds=600)
    make_payment("904", status="approved")
    now = utcnow()

    assert session_service.open_session("904", now) is True
    assert session_service.open_session("904", now) is False
    db_session.commit()

    chair = db_session.query(Chair).filter_by(chair_id="p1").one()
    assert chair.session_ends_at == now + timedelta(seconds=600)
    assert session_service.remaining_seconds(chair, now) == 600
    assert db_session.query(ChairSession).count() == 1


def test_open_session_requires_approved_payment(db_session, make_chair, make_payment):
    make_chair("p1")
    make_payment("905", status="pending")

    assert session_service.open_session("905") is False
    assert db_session.query(ChairSession).count() == 0


def test_lapsed_session_is_replaced_when_new_payment_arrives(db_session, make_chair, make_payment):
    _busy_chair(make_chair, make_payment, db_session, "p1", "906", ends_in=-5)
    make_payment("907", status="approved")

    assert session_service.open_session("907") is True
    db_session.commit()

    assert db_session.query(ChairSession).filter_by(is_active=True).one().payment_id == "907"
    assert db_session.query(ChairSession).filter_by(payment_id="906").one().is_active is False


def test_cleanup_endpoint(client, db_session, make_chair, make_payment):
    _busy_chair(make_chair, make_payment, db_session, "p1", "908", ends_in=-5)

    response = client.post('/api/sessions/cleanup')

    assert response.status_code == 200
    assert response.json == {"success": True, "cleaned": 1, "sessions": ["p1"]}
