"""
Races between independent handlers on a file-backed database.

Each worker runs in its own thread with its own app context (and therefore its
own session and connection), so the only shared state is the database, exactly
as with webhook workers and a cron-driven poller in production.
"""

import os
import tempfile
import threading

import pytest

from conftest import FakeDevice, FakeProcessor, TEST_CONFIG

from poltrona import create_app
from poltrona.extensions import db
from poltrona.models import Chair, ChairSession, Payment
from poltrona.services import intent_service, payment_service, polling_service
from poltrona.services.mercadopago import get_client
from poltrona.time_utils import utcnow


@pytest.fixture
def file_app():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    config = dict(TEST_CONFIG)
    config.update({
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{path}',
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
    })
    app = create_app(config)
    processor = FakeProcessor()
    device = FakeDevice()
    app.config['MERCADOPAGO_HTTP_TRANSPORT'] = processor.transport()
    app.config['DEVICE_HTTP_TRANSPORT'] = device.transport()

    with app.app_context():
        db.create_all()
        db.session.add(Chair(
            chair_id="p1",
            ip_address="192.168.0.50",
            price_cents=1000,
            duration_seconds=900,
            location="Shopping Centro",
            public_payment_url="https://pay.example.test/pagar/p1",
        ))
        db.session.commit()

    yield app, processor, device

    with app.app_context():
        db.session.remove()
        db.engine.dispose()
    os.unlink(path)


def _race(app, *workers):
    """Start every worker at the same moment; return results in order."""
    barrier = threading.Barrier(len(workers))
    results = [None] * len(workers)
    errors = []

    def _run(index, work):
        with app.app_context():
            barrier.wait()
            try:
                results[index] = work()
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=_run, args=(i, w)) for i, w in enumerate(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert not errors, errors
    return results


def _add_pending(app, processor, payment_id="5001"):
    processor.add_payment(payment_id, chair_id="p1", status="pending")
    with app.app_context():
        db.session.add(Payment(
            payment_id=payment_id,
            chair_id="p1",
            amount_cents=1000,
            status="pending",
            source="intent",
            created_at=utcnow(),
        ))
        db.session.commit()
    processor.set_status(payment_id, "approved")


def test_webhook_and_poller_race_on_one_payment(file_app):
    app, processor, device = file_app
    _add_pending(app, processor)

    def _via(source):
        def _work():
            detail = get_client().get_payment("5001")
            return payment_service.reconcile(detail, source=source)
        return _work

    outcomes = _race(app, _via(payment_service.SOURCE_WEBHOOK), _via(payment_service.SOURCE_POLL))

    assert sorted(o.action for o in outcomes) == ["already_resolved", "approved"]
    assert sum(1 for o in outcomes if o.session_opened) == 1
    with app.app_context():
        assert db.session.query(ChairSession).count() == 1
        assert db.session.query(Payment).filter_by(payment_id="5001").one().processed is True
    assert len(device.activations()) == 1


def test_overlapping_sweeps_approve_once(file_app):
    app, processor, device = file_app
    _add_pending(app, processor, "5002")

    summaries = _race(app, polling_service.run_sweep, polling_service.run_sweep)

    assert sum(s.approved for s in summaries) == 1
    assert sum(s.failed for s in summaries) == 0
    with app.app_context():
        assert db.session.query(ChairSession).count() == 1
    assert len(device.activations()) == 1


def test_concurrent_intent_requests_share_one_reference(file_app):
    app, processor, device = file_app

    results = _race(app, lambda: intent_service.create_intent("p1"), lambda: intent_service.create_intent("p1"))

    assert results[0].intent_ref == results[1].intent_ref
    with app.app_context():
        assert db.session.query(Payment).count() == 1
        chair = db.session.query(Chair).filter_by(chair_id="p1").one()
        assert chair.intent_payment_id == results[0].intent_ref


def test_cli_sweeps_and_registry(file_app):
    app, processor, device = file_app
    _add_pending(app, processor, "5003")
    runner = app.test_cli_runner()
    create_p2 = [
        "chairs", "create", "--chair-id", "p2", "--ip", "192.168.0.51",
        "--price", "12.50", "--location", "Sala 2",
    ]

    # Commands reuse an already pushed context, so push this app's
    with app.app_context():
        created = runner.invoke(args=create_p2)
        duplicate = runner.invoke(args=create_p2)
        polled = runner.invoke(args=["sweeps", "poll"])
        expired = runner.invoke(args=["sweeps", "expire-sessions"])
        listed = runner.invoke(args=["chairs", "list"])

    assert created.exit_code == 0
    assert "https://pay.example.test/pagar/p2" in created.output
    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output
    assert "approved=1" in polled.output
    assert "cleaned=0" in expired.output
    assert "p1" in listed.output and "p2" in listed.output
    assert len(device.activations()) == 1
