from poltrona.models import AuditLog, ChairSession, Payment


def _payment_envelope(payment_id):
    return {"type": "payment", "action": "payment.updated", "data": {"id": str(payment_id)}}


def test_non_payment_notifications_are_acknowledged(client, db_session, processor):
    response = client.post('/api/payments/webhook', json={"type": "merchant_order", "data": {"id": "1"}})

    assert response.status_code == 200
    assert response.json["success"] is True
    assert response.json["action"] == "ignored"
    assert processor.requests == []
    assert db_session.query(AuditLog).filter_by(action="WEBHOOK_IGNORED").count() == 1


def test_payment_notification_refetches_and_approves(client, db_session, make_chair, processor, device):
    make_chair("p1")
    processor.add_payment(4242, chair_id="p1", amount=10.0, status="approved")

    response = client.post('/api/payments/webhook', json=_payment_envelope(4242))

    assert response.status_code == 200
    assert response.json["status"] == "approved"
    assert len(processor.gets()) == 1
    payment = db_session.query(Payment).filter_by(payment_id="4242").one()
    assert payment.status == "approved"
    assert payment.processed is True
    assert payment.notified_at is not None
    assert db_session.query(ChairSession).filter_by(payment_id="4242").count() == 1
    assert len(device.activations()) == 1


def test_envelope_content_is_not_trusted(client, db_session, make_chair, processor, device):
    make_chair("p1")
    processor.add_payment(4243, chair_id="p1", status="pending")
    envelope = _payment_envelope(4243)
    envelope["data"]["status"] = "approved"

    response = client.post('/api/payments/webhook', json=envelope)

    assert response.status_code == 200
    assert db_session.query(Payment).filter_by(payment_id="4243").one().status == "pending"
    assert device.calls == []


def test_duplicate_delivery_is_harmless(client, db_session, make_chair, processor, device):
    make_chair("p1")
    processor.add_payment(4244, chair_id="p1", status="approved")

    first = client.post('/api/payments/webhook', json=_payment_envelope(4244))
    second = client.post('/api/payments/webhook', json=_payment_envelope(4244))

    assert first.json["action"] == "approved"
    assert second.json["action"] == "already_resolved"
    assert db_session.query(ChairSession).count() == 1
    assert len(device.activations()) == 1


def test_legacy_metadata_key_is_honoured(client, db_session, make_chair, processor, device):
    make_chair("p9")
    processor.add_payment(4245, metadata={"poltrona_id": "p9"}, status="approved")

    response = client.post('/api/payments/webhook', json=_payment_envelope(4245))

    assert response.json["status"] == "approved"
    assert db_session.query(Payment).filter_by(payment_id="4245").one().chair_id == "p9"


def test_soft_failures_are_acknowledged_and_logged(client, db_session, make_chair, processor, device):
    processor.add_payment(4246, metadata={}, status="approved")
    processor.add_payment(4247, chair_id="ghost", status="approved")

    no_metadata = client.post('/api/payments/webhook', json=_payment_envelope(4246))
    unknown_chair = client.post('/api/payments/webhook', json=_payment_envelope(4247))
    unknown_payment = client.post('/api/payments/webhook', json=_payment_envelope(9999))
    no_id = client.post('/api/payments/webhook', json={"type": "payment", "data": {}})

    for response in (no_metadata, unknown_chair, unknown_payment, no_id):
        assert response.status_code == 200
        assert response.json["success"] is True
    assert db_session.query(Payment).count() == 0
    assert db_session.query(AuditLog).filter_by(action="WEBHOOK_IGNORED").count() == 4
    assert device.calls == []


def test_processor_outage_asks_for_redelivery(client, db_session, make_chair, processor):
    make_chair("p1")
    processor.down = True

    response = client.post('/api/payments/webhook', json=_payment_envelope(4248))

    assert response.status_code == 502
    assert response.json["success"] is False
    assert "refused" not in response.json["message"]


def test_missing_configuration_is_a_server_error(app, client, db_session):
    app.config['MERCADOPAGO_ACCESS_TOKEN'] = ""
    try:
        response = client.post('/api/payments/webhook', json=_payment_envelope(1))
    finally:
        app.config['MERCADOPAGO_ACCESS_TOKEN'] = 'TEST-access-token'

    assert response.status_code == 500
    assert response.json["message"] == "Server configuration incomplete"


def test_ingestion_rules_are_the_module_docstring():
    from poltrona.services import webhook_service

    assert webhook_service.__doc__.strip().startswith("Webhook ingestion rules")
