import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from visa_intake.errors import InvalidTransition
from visa_intake.models import Application, ApplicationComment, PaymentOrder, utcnow

logger = structlog.get_logger(__name__)


class ApplicationStatus(str, enum.Enum):
    DRAFT = "draft"
    UNDER_REVIEW = "under_review"
    RESENT = "resent"
    APPROVED = "approved"
    REJECTED = "rejected"


class Action(str, enum.Enum):
    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_MORE_INFO = "request-more-info"


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    EMPLOYEE = "employee"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role

    @property
    def is_reviewer(self) -> bool:
        return self.role in REVIEWER_ROLES


REVIEWER_ROLES = frozenset({Role.EMPLOYEE, Role.ADMIN})
PAYMENT_ACTOR = Actor(id="payment-gateway", role=Role.SYSTEM)

TERMINAL_STATUSES = frozenset({ApplicationStatus.APPROVED, ApplicationStatus.REJECTED})
ASSIGNABLE_STATUSES = frozenset({ApplicationStatus.UNDER_REVIEW, ApplicationStatus.RESENT})

# not a status change, only recorded in the comment history
ASSIGN = "assign"

TRANSITIONS = {
    (ApplicationStatus.DRAFT, Action.SUBMIT): ApplicationStatus.UNDER_REVIEW,
    (ApplicationStatus.RESENT, Action.RESUBMIT): ApplicationStatus.UNDER_REVIEW,
    (ApplicationStatus.UNDER_REVIEW, Action.APPROVE): ApplicationStatus.APPROVED,
    (ApplicationStatus.UNDER_REVIEW, Action.REJECT): ApplicationStatus.REJECTED,
    (ApplicationStatus.UNDER_REVIEW, Action.REQUEST_MORE_INFO): ApplicationStatus.RESENT,
}

REQUIRED_ROLES = {
    Action.SUBMIT: frozenset({Role.CUSTOMER}),
    Action.RESUBMIT: frozenset({Role.CUSTOMER}),
    Action.APPROVE: REVIEWER_ROLES,
    Action.REJECT: REVIEWER_ROLES,
    Action.REQUEST_MORE_INFO: REVIEWER_ROLES,
}


def current_status(application: Application) -> ApplicationStatus:
    try:
        return ApplicationStatus(application.status)
    except ValueError:
        raise InvalidTransition(f"Application {application.id} has unknown status {application.status!r}")


def next_status(application: Application, action: Action, actor: Actor) -> ApplicationStatus:
    status = current_status(application)
    target = TRANSITIONS.get((status, action))
    if target is None:
        _reject(application, action.value, actor, f"cannot {action.value} an application that is {status.value}")

    if actor.role not in REQUIRED_ROLES[action]:
        _reject(application, action.value, actor, f"{actor.role.value} may not {action.value}")

    if actor.role == Role.CUSTOMER and application.customer_id != actor.id:
        _reject(application, action.value, actor, "customers may only act on their own applications")

    if actor.role == Role.EMPLOYEE and application.assigned_to not in (None, actor.id):
        _reject(application, action.value, actor, f"application is assigned to reviewer {application.assigned_to}")

    return target


def transition(
    application: Application,
    action: Action,
    actor: Actor,
    comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApplicationStatus:
    target = next_status(application, action, actor)
    _apply(application, action, actor, target, comment, now or utcnow())
    return target


def hold_for_payment(
    application: Application,
    actor: Actor,
    comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApplicationStatus:
    """Record a reviewer's approval of a payable application without approving it."""
    next_status(application, Action.APPROVE, actor)
    now = now or utcnow()
    status = current_status(application)

    application.assigned_to = application.assigned_to or actor.id
    application.payment_requested_by = actor.id
    application.payment_requested_at = now
    application.reviewed_at = now
    _record_comment(application, Action.APPROVE.value, actor, status, status, comment, now)

    logger.info(
        "approval_held_for_payment",
        application_id=application.id,
        reviewer_id=actor.id,
    )
    return status


def approve_after_payment(
    application: Application,
    order: PaymentOrder,
    now: Optional[datetime] = None,
) -> ApplicationStatus:
    """
    Approval path driven by a confirmed payment.

    Skips the reviewer capability check, the confirmed order is the
    authorisation. The application must still be under review and carry a
    reviewer's approval request.
    """
    status = current_status(application)
    if status != ApplicationStatus.UNDER_REVIEW or not application.payment_requested_by:
        _reject(application, Action.APPROVE.value, PAYMENT_ACTOR, f"application is {status.value}, not awaiting payment")
    if order.state != "confirmed" or order.application_id != application.id:
        _reject(application, Action.APPROVE.value, PAYMENT_ACTOR, f"order {order.reference} is not confirmed for this application")

    if order.waived:
        comment = f"Fee waived (order {order.reference})"
    else:
        comment = f"Payment {order.payment_reference or order.reference} confirmed"
    _apply(application, Action.APPROVE, PAYMENT_ACTOR, ApplicationStatus.APPROVED, comment, now or utcnow())
    return ApplicationStatus.APPROVED


def assign_reviewer(
    application: Application,
    reviewer_id: str,
    actor: Actor,
    now: Optional[datetime] = None,
) -> ApplicationStatus:
    """
    Hand an open application to a reviewer.

    Admins assign anyone; an employee can only take an unassigned
    application for themselves. Status is unchanged.
    """
    status = current_status(application)
    if not actor.is_reviewer:
        _reject(application, ASSIGN, actor, f"{actor.role.value} may not assign reviewers")
    if status not in ASSIGNABLE_STATUSES:
        _reject(application, ASSIGN, actor, f"cannot assign an application that is {status.value}")
    if actor.role == Role.EMPLOYEE:
        if reviewer_id != actor.id:
            _reject(application, ASSIGN, actor, "employees may only assign applications to themselves")
        if application.assigned_to not in (None, actor.id):
            _reject(application, ASSIGN, actor, f"application is assigned to reviewer {application.assigned_to}")

    now = now or utcnow()
    previous = application.assigned_to
    application.assigned_to = reviewer_id
    application.updated_at = now
    _record_comment(application, ASSIGN, actor, status, status, f"Assigned to {reviewer_id}", now)

    logger.info(
        "reviewer_assigned",
        application_id=application.id,
        reviewer_id=reviewer_id,
        previous_reviewer_id=previous,
        actor_id=actor.id,
    )
    return status


def _apply(application, action, actor, target, comment, now):
    old_status = current_status(application)
    application.status = target.value
    application.comment = comment
    application.updated_at = now

    if action in (Action.SUBMIT, Action.RESUBMIT):
        application.submitted_at = now
    else:
        application.reviewed_at = now
        if actor.is_reviewer and application.assigned_to is None:
            application.assigned_to = actor.id
    if target in TERMINAL_STATUSES:
        application.decided_at = now
    if target != ApplicationStatus.APPROVED:
        application.payment_requested_by = None
        application.payment_requested_at = None

    _record_comment(application, action.value, actor, old_status, target, comment, now)
    logger.info(
        "application_transitioned",
        application_id=application.id,
        action=action.value,
        old_status=old_status.value,
        new_status=target.value,
        actor_id=actor.id,
        actor_role=actor.role.value,
    )


def _record_comment(application, action_name, actor, old_status, new_status, body, now):
    application.comments.append(
        ApplicationComment(
            action=action_name,
            old_status=old_status.value,
            new_status=new_status.value,
            actor_id=actor.id,
            actor_role=actor.role.value,
            body=body,
            created_at=now,
        )
    )


def _reject(application, action_name, actor, reason):
    # Reaching this from the UI means the client offered an action it should not have
    logger.warning(
        "invalid_transition",
        application_id=application.id,
        action=action_name,
        status=application.status,
        actor_id=actor.id,
        actor_role=actor.role.value,
        reason=reason,
    )
    raise InvalidTransition(f"Invalid transition: {reason}")
