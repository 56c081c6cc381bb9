# Overview: Service-layer operations for device notification; activation calls with bounded retry.

"""
Device Notifier

WHY: Chair controllers are small embedded boards on flaky Wi-Fi. An approved
payment must reach the relay, but a board that is down must not hold a handler
hostage, and two reconciliation paths must not fire the relay twice.

DESIGN:
- RetryPolicy is an explicit value (attempts, per-attempt timeout, linear backoff)
  handed to DeviceNotifier; nothing here reads config directly except get_notifier().
- "Already notified" (notified_at set) is checked before any HTTP call and is a
  no-op that leaves notification_attempts untouched.
- The success stamp is a conditional write on notified_at IS NULL.
- A failed delivery is terminal and observable (audit row), never raised.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx
from flask import current_app

from ..errors import NotFoundError, UpstreamUnavailableError
from ..extensions import db
from ..models import Payment
from . import audit_service
from .concurrency import compare_and_set
from poltrona.time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)


class DeviceUnreachableError(UpstreamUnavailableError):
    """Device did not answer a direct (non-retried) call."""

    def __init__(self, chair_id: str, reason: str):
        super().__init__(
            "Could not reach the chair controller. Check that it is online.",
            details={"chairId": chair_id},
        )
        self.reason = reason


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout_seconds: float = 5.0
    backoff_seconds: float = 1.0

    def delay_after(self, attempt: int) -> float:
        """Linear backoff: wait attempt x backoff_seconds after a failed attempt."""
        return attempt * self.backoff_seconds


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    attempts: int
    error: str | None = None


def _describe(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


class DeviceNotifier:
    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        status_timeout_seconds: float = 10.0,
    ):
        self.policy = policy or RetryPolicy()
        self.transport = transport
        self.sleep = sleep
        self.clock = clock
        self.status_timeout_seconds = status_timeout_seconds

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self.transport)

    def _post_within(self, url: str, payload: dict, budget: float) -> httpx.Response:
        """
        POST and read the whole reply inside one wall-clock budget.

        httpx timeouts bound each phase separately, not the attempt.
        """
        deadline = self.clock() + budget
        with self._client(budget) as client:
            with client.stream("POST", url, json=payload) as response:
                for _ in response.iter_bytes():
                    if self.clock() > deadline:
                        raise httpx.ReadTimeout(f"no complete reply within {budget:g}s", request=response.request)
        return response

    # -------------------------------------------------------------------------
    # Wire calls
    # -------------------------------------------------------------------------

    def deliver(self, device_address: str, chair_id: str, payment_id: str) -> DeliveryResult:
        """POST /payment-approved until it succeeds or the policy is exhausted. No DB access."""
        url = f"http://{device_address}/payment-approved"
        policy = self.policy
        last_error = None

        for attempt in range(1, policy.max_attempts + 1):
            payload = {
                "chair_id": chair_id,
                "payment_id": payment_id,
                "timestamp": to_utc_z(utcnow()),
            }
            try:
                response = self._post_within(url, payload, policy.timeout_seconds)
                if response.is_success:
                    logger.info(
                        "Device notified chair=%s payment=%s attempt=%s/%s",
                        chair_id, payment_id, attempt, policy.max_attempts,
                    )
                    return DeliveryResult(delivered=True, attempts=attempt)
                last_error = f"HTTP {response.status_code}"
            except httpx.TimeoutException:
                last_error = f"timeout after {policy.timeout_seconds:g}s"
            except httpx.HTTPError as exc:
                last_error = _describe(exc)

            logger.warning(
                "Device notify failed chair=%s payment=%s attempt=%s/%s: %s",
                chair_id, payment_id, attempt, policy.max_attempts, last_error,
            )
            if attempt < policy.max_attempts:
                self.sleep(policy.delay_after(attempt))

        return DeliveryResult(delivered=False, attempts=policy.max_attempts, error=last_error)

    def test_activation(self, device_address: str, chair_id: str) -> dict:
        """Single, non-payment-gated POST /test for diagnostics."""
        url = f"http://{device_address}/test"
        start_time = time.time()
        try:
            response = self._post_within(url, {"test": True}, self.policy.timeout_seconds)
        except httpx.HTTPError as exc:
            logger.warning("Test activation failed chair=%s address=%s: %s", chair_id, device_address, _describe(exc))
            raise DeviceUnreachableError(chair_id, _describe(exc))

        if not response.is_success:
            logger.warning("Test activation rejected chair=%s: HTTP %s", chair_id, response.status_code)
            raise DeviceUnreachableError(chair_id, f"HTTP {response.status_code}")

        return {
            "delivered": True,
            "status_code": response.status_code,
            "response_ms": round((time.time() - start_time) * 1000, 2),
        }

    def probe(self, device_address: str) -> dict:
        """GET /status; reports offline instead of raising."""
        url = f"http://{device_address}/status"
        start_time = time.time()
        try:
            with self._client(self.status_timeout_seconds) as client:
                response = client.get(url)
        except httpx.HTTPError as exc:
            return {
                "status": "offline",
                "address": device_address,
                "response_ms": round((time.time() - start_time) * 1000, 2),
                "error": _describe(exc),
                "error_type": exc.__class__.__name__,
            }

        return {
            "status": "online",
            "address": device_address,
            "response_ms": round((time.time() - start_time) * 1000, 2),
            "status_code": response.status_code,
            "response": response.text[:1000],
        }

    # -------------------------------------------------------------------------
    # Payment notification
    # -------------------------------------------------------------------------

    def notify(
        self,
        device_address: str,
        chair_id: str,
        payment_id: str,
        *,
        actor: str = audit_service.ACTOR_NOTIFIER,
    ) -> bool:
        """
        Tell the chair a payment was approved. Returns delivered.

        Commits its own stamps; callers must have committed the approval first.
        """
        payment = db.session.query(Payment).filter_by(payment_id=payment_id).one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.notified_at is not None:
            logger.info("Payment %s already notified at %s; skipping", payment_id, to_utc_z(payment.notified_at))
            return True

        result = self.deliver(device_address, chair_id, payment_id)
        now = utcnow()

        if result.delivered:
            stamped = compare_and_set(
                Payment,
                [Payment.payment_id == payment_id, Payment.notified_at.is_(None)],
                {
                    "notified_at": now,
                    "notification_attempts": Payment.notification_attempts + result.attempts,
                    "last_notification_error": None,
                },
            )
            if stamped:
                audit_service.record(
                    "DEVICE_NOTIFIED",
                    actor=actor,
                    entity_type="payment",
                    entity_id=payment_id,
                    chair_id=chair_id,
                    payment_id=payment_id,
                    message=f"Chair {chair_id} activated after {result.attempts} attempt(s)",
                    new_values={"notified_at": to_utc_z(now), "attempts": result.attempts},
                )
            else:
                logger.info("Payment %s was stamped notified by a concurrent invocation", payment_id)
            db.session.commit()
            return True

        compare_and_set(
            Payment,
            [Payment.payment_id == payment_id, Payment.notified_at.is_(None)],
            {
                "notification_attempts": Payment.notification_attempts + result.attempts,
                "last_notification_error": (result.error or "unknown error")[:255],
            },
        )
        audit_service.record(
            "DEVICE_NOTIFY_FAILED",
            actor=actor,
            entity_type="payment",
            entity_id=payment_id,
            chair_id=chair_id,
            payment_id=payment_id,
            message=f"Chair {chair_id} unreachable after {result.attempts} attempt(s): {result.error}",
            new_values={"attempts": result.attempts, "error": result.error},
        )
        db.session.commit()
        logger.error(
            "Giving up on device notification chair=%s payment=%s after %s attempts: %s",
            chair_id, payment_id, result.attempts, result.error,
        )
        return False


def get_notifier() -> DeviceNotifier:
    config = current_app.config
    policy = RetryPolicy(
        max_attempts=config["DEVICE_NOTIFY_MAX_ATTEMPTS"],
        timeout_seconds=config["DEVICE_NOTIFY_TIMEOUT_SECONDS"],
        backoff_seconds=config["DEVICE_NOTIFY_BACKOFF_SECONDS"],
    )
    return DeviceNotifier(
        policy,
        transport=config.get("DEVICE_HTTP_TRANSPORT"),
        status_timeout_seconds=config["DEVICE_STATUS_TIMEOUT_SECONDS"],
    )
