import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from visa_intake.config import Settings, get_settings
from visa_intake.errors import (
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransition,
    NotFound,
    NotPayable,
    OrderAlreadyOpen,
    PaymentVerificationFailed,
    PersistenceConflict,
)
from visa_intake.models import Application, PaymentOrder, utcnow
from visa_intake.repository import (
    OPEN_ORDER_STATES,
    commit,
    load_application,
    load_open_order,
    load_order,
)
from visa_intake.workflow import ApplicationStatus, approve_after_payment

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OrderDescriptor:
    reference: Optional[str]
    application_id: str
    amount: int
    currency: str
    state: str
    client_credentials: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_order(cls, order: PaymentOrder, credentials: Optional[Dict[str, Any]] = None):
        return cls(
            reference=order.reference,
            application_id=order.application_id,
            amount=order.amount,
            currency=order.currency,
            state=order.state,
            client_credentials=credentials or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_reference": self.reference,
            "application_id": self.application_id,
            "amount": self.amount,
            "currency": self.currency,
            "state": self.state,
            "client_credentials": self.client_credentials,
        }


@dataclass(frozen=True)
class Confirmation:
    reference: str
    order_state: str
    application_id: str
    application_status: str


def fee_for(application: Application, settings: Optional[Settings] = None):
    settings = settings or get_settings()
    visa_type = application.visa_type
    currency = (visa_type.currency or settings.default_currency).lower()
    return visa_type.fee_amount or 0, currency


def is_payable(application: Application) -> bool:
    return (application.visa_type.fee_amount or 0) > 0


def release_open_order(db: Session, application_id: str, reason: str) -> Optional[PaymentOrder]:
    """
    Cancel the application's open order if the client has not yet reported it.

    Does not commit. An order awaiting confirmation is left alone: the
    customer may already have paid.
    """
    order = load_open_order(db, application_id)
    if order is None or order.state != "created":
        return None
    _close(order, "cancelled", reason)
    logger.info("payment_order_released", application_id=application_id, order_id=order.id, reason=reason)
    return order


def cancel_remote_quietly(gateway, order: PaymentOrder) -> None:
    if gateway is None or not order.reference or order.waived:
        return
    try:
        gateway.cancel_remote_order(order.reference)
    except GatewayError as e:
        # the local order is already closed; a late payment lands in confirm and fails for follow-up
        logger.warning("remote_cancel_failed", order_reference=order.reference, error=str(e))


def _close(order: PaymentOrder, state: str, reason: Optional[str] = None) -> None:
    order.state = state
    order.open_slot = None
    if reason:
        order.reason = reason
    order.updated_at = utcnow()


class PaymentCoordinator:
    def __init__(self, db: Session, gateway=None, settings: Optional[Settings] = None):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()

    def create_order(self, application_id: str) -> OrderDescriptor:
        application = load_application(self.db, application_id)
        if not is_payable(application):
            raise NotPayable(f"Visa type for application {application.number} carries no fee")
        self._ensure_awaiting_payment(application)

        if self.gateway is None:
            raise GatewayUnavailable("Payment gateway is not configured")

        existing = load_open_order(self.db, application.id)
        if existing is not None:
            if not self._is_stale(existing):
                raise OrderAlreadyOpen(existing)
            self._expire(existing)

        amount, currency = fee_for(application, self.settings)
        order = PaymentOrder(
            application_id=application.id,
            amount=amount,
            currency=currency,
            state="created",
            open_slot=application.id,
        )
        self.db.add(order)
        try:
            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            logger.warning("payment_order_reserve_conflict", application_id=application.id, error=str(e))
            raise PersistenceConflict("Concurrent payment order update, retry") from e
        except IntegrityError:
            # lost the race for the open slot
            self.db.rollback()
            existing = load_open_order(self.db, application.id)
            logger.info("payment_order_already_open", application_id=application.id)
            if existing is None:
                raise PersistenceConflict("Concurrent payment order update, retry")
            raise OrderAlreadyOpen(existing)

        try:
            remote = self._create_remote(order, application)
        except GatewayError as e:
            _close(order, "failed", f"gateway error: {e}")
            commit(self.db)
            if not e.transient:
                raise GatewayRejected("Payment gateway rejected the order, contact support") from e
            raise GatewayUnavailable("Payment gateway is unavailable, please retry") from e

        order.reference = remote.reference
        order.client_token = remote.client_credentials.get("client_secret")
        commit(self.db)

        logger.info(
            "payment_order_created",
            application_id=application.id,
            order_reference=order.reference,
            amount=order.amount,
            currency=order.currency,
        )
        return OrderDescriptor.from_order(order, remote.client_credentials)

    def _create_remote(self, order: PaymentOrder, application: Application):
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.gateway_max_attempts),
            wait=wait_exponential(multiplier=self.settings.gateway_retry_base_delay, max=10),
            retry=retry_if_exception(lambda e: isinstance(e, GatewayError) and e.transient),
            before_sleep=lambda state: logger.warning(
                "gateway_retry",
                order_id=order.id,
                attempt=state.attempt_number,
            ),
            reraise=True,
        )
        return retrying(
            self.gateway.create_remote_order,
            amount=order.amount,
            currency=order.currency,
            metadata={
                "application_id": application.id,
                "application_number": application.number,
                "order_id": order.id,
            },
            # same key on every retry, the gateway never opens two orders for one row
            idempotency_key=f"visa-order-{order.id}",
        )

    def _ensure_awaiting_payment(self, application: Application) -> None:
        if application.status != ApplicationStatus.UNDER_REVIEW.value or not application.payment_requested_by:
            logger.warning(
                "invalid_transition",
                application_id=application.id,
                action="create_order",
                status=application.status,
            )
            raise InvalidTransition(
                f"Application {application.number} is not awaiting payment (status {application.status})"
            )

    def _is_stale(self, order: PaymentOrder) -> bool:
        ttl = timedelta(minutes=self.settings.order_ttl_minutes)
        return order.state == "created" and order.created_at < utcnow() - ttl

    def _expire(self, order: PaymentOrder) -> None:
        _close(order, "cancelled", "expired")
        commit(self.db)
        logger.info("payment_order_expired", order_id=order.id, order_reference=order.reference)
        cancel_remote_quietly(self.gateway, order)

    def credentials_for(self, order: PaymentOrder) -> Dict[str, Any]:
        credentials = {}
        if order.client_token:
            credentials["client_secret"] = order.client_token
        if self.settings.stripe_publishable_key:
            credentials["publishable_key"] = self.settings.stripe_publishable_key
        return credentials

    def confirm_order(self, reference: str, client_signature: str) -> Confirmation:
        order = load_order(self.db, reference)
        if order.state == "confirmed":
            return self._confirmation(order)
        if order.state not in OPEN_ORDER_STATES:
            raise PaymentVerificationFailed(f"Payment order {reference} is {order.state}")
        if self.gateway is None:
            raise GatewayUnavailable("Payment gateway is not configured")

        if order.state == "created":
            order.state = "awaiting_confirmation"
            commit(self.db)

        try:
            verification = self.gateway.verify_completion(
                order.reference, client_signature, order.amount, order.currency
            )
        except GatewayError as e:
            if e.transient:
                # order stays awaiting_confirmation, the report can be repeated
                raise GatewayUnavailable("Payment gateway is unavailable, please retry") from e
            self._fail(order, f"gateway rejected verification: {e}")

        if not verification.verified:
            self._fail(order, verification.reason)

        return self._finalize(order, verification.payment_reference)

    def confirm_verified(self, reference: str, payment_reference: Optional[str]) -> Confirmation:
        order = load_order(self.db, reference)
        if order.state == "confirmed":
            return self._confirmation(order)
        if order.state not in OPEN_ORDER_STATES:
            logger.error(
                "payment_received_for_closed_order",
                order_reference=reference,
                order_state=order.state,
                payment_reference=payment_reference,
            )
            raise PaymentVerificationFailed(f"Payment received for {order.state} order {reference}")
        return self._finalize(order, payment_reference)

    def _finalize(self, order: PaymentOrder, payment_reference: Optional[str]) -> Confirmation:
        application = order.application
        _close(order, "confirmed")
        order.payment_reference = payment_reference
        order.confirmed_at = utcnow()
        try:
            approve_after_payment(application, order)
        except InvalidTransition as e:
            self.db.rollback()
            order = load_order(self.db, order.reference)
            if order.state == "confirmed":
                # a concurrent confirmation got there first
                return self._confirmation(order)
            order.payment_reference = payment_reference
            self._fail(order, f"payment received but {e.message}; refund required")

        # order and application move together or not at all
        commit(self.db)
        logger.info(
            "payment_order_confirmed",
            order_reference=order.reference,
            application_id=application.id,
            payment_reference=payment_reference,
        )
        return self._confirmation(order)

    def _fail(self, order: PaymentOrder, reason: str):
        _close(order, "failed", reason)
        commit(self.db)
        logger.error(
            "payment_verification_failed",
            order_reference=order.reference,
            application_id=order.application_id,
            reason=reason,
        )
        raise PaymentVerificationFailed(
            "Payment could not be verified. Please contact support with your order reference."
        )

    def _confirmation(self, order: PaymentOrder) -> Confirmation:
        return Confirmation(
            reference=order.reference,
            order_state=order.state,
            application_id=order.application_id,
            application_status=order.application.status,
        )

    def cancel_order(self, reference: str, reason: str, authoritative: bool = False) -> OrderDescriptor:
        """
        Cancel an open order and free the application's order slot.

        Client-reported cancellation only applies to orders the client has
        not yet reported as paid; ``authoritative`` is for gateway events.
        """
        order = load_order(self.db, reference)
        if order.state == "cancelled":
            return OrderDescriptor.from_order(order)

        allowed = OPEN_ORDER_STATES if authoritative else ("created",)
        if order.state not in allowed:
            raise InvalidTransition(f"Cannot cancel payment order {reference} in state {order.state}")

        _close(order, "cancelled", reason or "cancelled")
        commit(self.db)
        logger.info("payment_order_cancelled", order_reference=reference, reason=reason)

        if not authoritative:
            cancel_remote_quietly(self.gateway, order)
        return OrderDescriptor.from_order(order)

    def fail_order(self, reference: str, reason: str) -> OrderDescriptor:
        order = load_order(self.db, reference)
        if order.state in OPEN_ORDER_STATES:
            _close(order, "failed", reason)
            commit(self.db)
            logger.info("payment_order_failed", order_reference=reference, reason=reason)
        return OrderDescriptor.from_order(order)

    def waive_fee(self, application_id: str) -> Confirmation:
        if not self.settings.allow_fee_waiver:
            raise GatewayUnavailable("Payment gateway is unavailable and fee waiver is disabled")

        application = load_application(self.db, application_id)
        self._ensure_awaiting_payment(application)
        open_order = load_open_order(self.db, application.id)
        if open_order is not None and open_order.state != "created":
            # the customer may already have paid this one
            raise OrderAlreadyOpen(open_order)
        release_open_order(self.db, application.id, "fee waived")

        amount, currency = fee_for(application, self.settings)
        order = PaymentOrder(
            reference=f"waived-{uuid.uuid4().hex}",
            application_id=application.id,
            amount=amount,
            currency=currency,
            state="confirmed",
            waived=True,
            reason="fee waived: gateway unavailable",
            confirmed_at=utcnow(),
        )
        self.db.add(order)
        self.db.flush()
        approve_after_payment(application, order)
        commit(self.db)

        logger.warning("payment_fee_waived", application_id=application.id, order_reference=order.reference)
        return self._confirmation(order)


def handle_gateway_event(coordinator: PaymentCoordinator, event) -> None:
    """Apply a signature-verified gateway event; unknown orders are ignored."""
    event_type = event["type"]
    intent = event["data"]["object"]
    reference = intent["id"]

    try:
        if event_type == "payment_intent.succeeded":
            coordinator.confirm_verified(reference, intent.get("latest_charge") or reference)
        elif event_type == "payment_intent.payment_failed":
            coordinator.fail_order(reference, "gateway reported payment failure")
        elif event_type == "payment_intent.canceled":
            coordinator.cancel_order(reference, "cancelled at gateway", authoritative=True)
        else:
            logger.debug("gateway_event_ignored", event_type=event_type)
    except NotFound:
        logger.info("gateway_event_unknown_order", event_type=event_type, order_reference=reference)
    except (PaymentVerificationFailed, InvalidTransition) as e:
        # acknowledged so the gateway stops redelivering; the order row carries the reason
        logger.error(
            "gateway_event_needs_reconciliation",
            event_type=event_type,
            order_reference=reference,
            error=e.message,
        )
