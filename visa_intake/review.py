from dataclasses import dataclass
from typing import Optional, Union

import structlog
from sqlalchemy.orm import Session

from visa_intake.config import get_settings
from visa_intake.errors import InvalidTransition, ReviewerAtCapacity
from visa_intake.models import Application
from visa_intake.payments import (
    OrderDescriptor,
    cancel_remote_quietly,
    fee_for,
    is_payable,
    release_open_order,
)
from visa_intake.repository import (
    commit,
    count_assigned,
    load_application,
    load_confirmed_order,
    load_open_order,
)
from visa_intake.workflow import (
    Action,
    Actor,
    ApplicationStatus,
    assign_reviewer,
    hold_for_payment,
    next_status,
    transition,
)

logger = structlog.get_logger(__name__)

REVIEW_ACTIONS = (Action.APPROVE, Action.REJECT, Action.REQUEST_MORE_INFO)


@dataclass(frozen=True)
class Approved:
    application_id: str
    status: ApplicationStatus = ApplicationStatus.APPROVED


@dataclass(frozen=True)
class AwaitingPayment:
    application_id: str
    amount: int
    currency: str
    order: Optional[OrderDescriptor] = None
    status: ApplicationStatus = ApplicationStatus.UNDER_REVIEW


@dataclass(frozen=True)
class Rejected:
    application_id: str
    status: ApplicationStatus = ApplicationStatus.REJECTED


@dataclass(frozen=True)
class MoreInfoRequested:
    application_id: str
    status: ApplicationStatus = ApplicationStatus.RESENT


ReviewOutcome = Union[Approved, AwaitingPayment, Rejected, MoreInfoRequested]


def submit_for_review(db: Session, application_id: str, actor: Actor) -> ApplicationStatus:
    """Submit a draft, or resubmit an application sent back for more information."""
    application = load_application(db, application_id)
    if application.status == ApplicationStatus.RESENT.value:
        action = Action.RESUBMIT
    else:
        action = Action.SUBMIT
    status = transition(application, action, actor)
    commit(db)
    return status


def parse_decision(decision: str) -> Action:
    try:
        action = Action(decision)
    except ValueError:
        action = None
    if action not in REVIEW_ACTIONS:
        raise InvalidTransition(f"Unknown review decision {decision!r}")
    return action


def review_decision(
    db: Session,
    application_id: str,
    actor: Actor,
    decision: str,
    comment: Optional[str] = None,
    gateway=None,
) -> ReviewOutcome:
    action = parse_decision(decision)
    application = load_application(db, application_id)
    next_status(application, action, actor)

    if action == Action.APPROVE:
        return _approve(db, application, actor, comment)

    released = release_open_order(db, application.id, f"review decision: {action.value}")
    transition(application, action, actor, comment)
    commit(db)
    if released is not None:
        cancel_remote_quietly(gateway, released)

    if action == Action.REJECT:
        return Rejected(application.id)
    return MoreInfoRequested(application.id)


def _approve(db: Session, application: Application, actor: Actor, comment: Optional[str]) -> ReviewOutcome:
    if is_payable(application) and load_confirmed_order(db, application.id) is None:
        hold_for_payment(application, actor, comment)
        commit(db)

        amount, currency = fee_for(application)
        open_order = load_open_order(db, application.id)
        descriptor = OrderDescriptor.from_order(open_order) if open_order is not None else None
        logger.info(
            "approval_awaiting_payment",
            application_id=application.id,
            amount=amount,
            currency=currency,
        )
        return AwaitingPayment(application.id, amount, currency, descriptor)

    transition(application, Action.APPROVE, actor, comment)
    commit(db)
    return Approved(application.id)


def assign_application(db: Session, application_id: str, actor: Actor, reviewer_id: str) -> str:
    application = load_application(db, application_id)
    previous = application.assigned_to
    assign_reviewer(application, reviewer_id, actor)

    if previous != reviewer_id:
        limit = get_settings().reviewer_max_workload
        if count_assigned(db, reviewer_id, exclude_application_id=application.id) >= limit:
            db.rollback()
            logger.warning("reviewer_at_capacity", reviewer_id=reviewer_id, limit=limit)
            raise ReviewerAtCapacity(f"Reviewer {reviewer_id} has reached the maximum workload ({limit} applications)")
    commit(db)
    return application.assigned_to
