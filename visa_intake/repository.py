from typing import List, Optional, Tuple

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from visa_intake.errors import NotFound, PersistenceConflict
from visa_intake.models import Application, PaymentOrder
from visa_intake.workflow import Actor, ApplicationStatus, Role

logger = structlog.get_logger(__name__)

OPEN_ORDER_STATES = ("created", "awaiting_confirmation")
ACTIVE_REVIEW_STATES = (ApplicationStatus.UNDER_REVIEW.value, ApplicationStatus.RESENT.value)


def commit(db: Session) -> None:
    """Commit, turning concurrent-write collisions into PersistenceConflict."""
    try:
        db.commit()
    except (StaleDataError, OperationalError) as e:
        db.rollback()
        logger.warning("persistence_conflict", error=str(e))
        raise PersistenceConflict("The record was changed by another request, retry from a fresh read") from e


def load_application(db: Session, application_id: str) -> Application:
    application = db.get(Application, application_id)
    if application is None:
        raise NotFound(f"Application {application_id} not found")
    return application


def load_order(db: Session, reference: str) -> PaymentOrder:
    order = db.query(PaymentOrder).filter_by(reference=reference).first()
    if order is None:
        raise NotFound(f"Payment order {reference} not found")
    return order


def load_open_order(db: Session, application_id: str) -> Optional[PaymentOrder]:
    return db.query(PaymentOrder).filter_by(open_slot=application_id).first()


def load_confirmed_order(db: Session, application_id: str) -> Optional[PaymentOrder]:
    return (
        db.query(PaymentOrder)
        .filter_by(application_id=application_id, state="confirmed")
        .first()
    )


def list_orders(db: Session, application_id: str) -> List[PaymentOrder]:
    return (
        db.query(PaymentOrder)
        .filter_by(application_id=application_id)
        .order_by(PaymentOrder.created_at)
        .all()
    )


def list_applications(
    db: Session,
    actor: Actor,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
) -> Tuple[int, List[Application]]:
    """
    One page of the applications ``actor`` may see, newest first.

    Customers see their own; employees see what is assigned to them plus the
    unassigned review queue; admins see everything.
    """
    query = db.query(Application)
    if actor.role == Role.CUSTOMER:
        query = query.filter(Application.customer_id == actor.id)
    elif actor.role == Role.EMPLOYEE:
        query = query.filter(or_(
            Application.assigned_to == actor.id,
            and_(
                Application.assigned_to.is_(None),
                Application.status == ApplicationStatus.UNDER_REVIEW.value,
            ),
        ))
    if status:
        query = query.filter(Application.status == status)

    total = query.count()
    items = (
        query.order_by(Application.created_at.desc(), Application.number.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return total, items


def count_assigned(db: Session, reviewer_id: str, exclude_application_id: Optional[str] = None) -> int:
    query = db.query(Application).filter(
        Application.assigned_to == reviewer_id,
        Application.status.in_(ACTIVE_REVIEW_STATES),
    )
    if exclude_application_id:
        query = query.filter(Application.id != exclude_application_id)
    return query.count()
