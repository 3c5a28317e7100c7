from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from visa_intake.auth import get_actor
from visa_intake.config import get_settings
from visa_intake.database import SessionLocal
from visa_intake.errors import (
    GatewayUnavailable,
    NotFound,
    NotPayable,
    OrderAlreadyOpen,
    PaymentVerificationFailed,
)
from visa_intake.gateway import get_gateway
from visa_intake.models import Application, VisaType
from visa_intake.payments import OrderDescriptor, PaymentCoordinator
from visa_intake.repository import (
    commit,
    list_applications,
    list_orders,
    load_application,
    load_order,
)
from visa_intake.review import (
    Approved,
    AwaitingPayment,
    Rejected,
    assign_application,
    review_decision,
    submit_for_review,
)
from visa_intake.workflow import Actor, Role

router = APIRouter()


class ApplicationRequest(BaseModel):
    country_id: str
    visa_type_id: str


class ReviewRequest(BaseModel):
    decision: str
    comment: Optional[str] = None


class CompletionReport(BaseModel):
    signature: str


class AssignRequest(BaseModel):
    reviewer_id: str


class CancelRequest(BaseModel):
    reason: str = "closed by customer"


def _ensure_visible(application: Application, actor: Actor):
    # customers never learn that someone else's application exists
    if actor.role == Role.CUSTOMER and application.customer_id != actor.id:
        raise NotFound(f"Application {application.id} not found")


def _order_dict(order):
    return {
        "order_reference": order.reference,
        "amount": order.amount,
        "currency": order.currency,
        "state": order.state,
        "waived": order.waived,
        "reason": order.reason,
        "created_at": order.created_at.isoformat(),
    }


def _existing_order(coordinator, order):
    existing = OrderDescriptor.from_order(order, coordinator.credentials_for(order))
    return {"payment_required": True, "existing": True, **existing.to_dict()}


def _summary_dict(application):
    return {
        "id": application.id,
        "number": application.number,
        "status": application.status,
        "country_id": application.country_id,
        "visa_type_id": application.visa_type_id,
        "customer_id": application.customer_id,
        "assigned_to": application.assigned_to,
        "updated_at": application.updated_at.isoformat(),
    }


def _application_dict(application, orders=None):
    data = {
        "id": application.id,
        "number": application.number,
        "status": application.status,
        "country_id": application.country_id,
        "visa_type_id": application.visa_type_id,
        "customer_id": application.customer_id,
        "assigned_to": application.assigned_to,
        "comment": application.comment,
        "payment_requested": bool(application.payment_requested_by),
        "updated_at": application.updated_at.isoformat(),
        "comments": [
            {
                "action": c.action,
                "old_status": c.old_status,
                "new_status": c.new_status,
                "actor_id": c.actor_id,
                "actor_role": c.actor_role,
                "body": c.body,
                "created_at": c.created_at.isoformat(),
            }
            for c in application.comments
        ],
    }
    if orders is not None:
        data["payments"] = [_order_dict(o) for o in orders]
    return data


@router.post("/applications", status_code=201)
def create_application(request: ApplicationRequest, actor: Actor = Depends(get_actor)):
    if actor.role != Role.CUSTOMER:
        raise HTTPException(status_code=403, detail="Only customers can create applications")

    db = SessionLocal()
    try:
        visa_type = db.get(VisaType, request.visa_type_id)
        if not visa_type or not visa_type.is_active or visa_type.country_id != request.country_id:
            raise HTTPException(status_code=400, detail="Invalid visa type selected")

        application = Application(
            country_id=request.country_id,
            visa_type_id=visa_type.id,
            customer_id=actor.id,
            status="draft",
        )
        db.add(application)
        commit(db)
        return {"application_id": application.id, "number": application.number, "status": application.status}
    finally:
        db.close()


@router.get("/applications")
def applications(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    actor: Actor = Depends(get_actor),
):
    db = SessionLocal()
    try:
        total, items = list_applications(db, actor, page, limit, status)
        return {
            "data": [_summary_dict(a) for a in items],
            "page": page,
            "limit": limit,
            "total": total,
        }
    finally:
        db.close()


@router.get("/applications/{application_id}")
def get_application(application_id: str, actor: Actor = Depends(get_actor)):
    db = SessionLocal()
    try:
        application = load_application(db, application_id)
        _ensure_visible(application, actor)
        return _application_dict(application, list_orders(db, application.id))
    finally:
        db.close()


@router.post("/applications/{application_id}/submit")
def submit_application(application_id: str, actor: Actor = Depends(get_actor)):
    db = SessionLocal()
    try:
        status = submit_for_review(db, application_id, actor)
        return {"application_id": application_id, "status": status.value}
    finally:
        db.close()


@router.post("/applications/{application_id}/review")
def review_application(
    application_id: str,
    request: ReviewRequest,
    actor: Actor = Depends(get_actor),
    gateway=Depends(get_gateway),
):
    db = SessionLocal()
    try:
        outcome = review_decision(db, application_id, actor, request.decision, request.comment, gateway)
    finally:
        db.close()

    response = {"application_id": application_id, "status": outcome.status.value}
    if isinstance(outcome, AwaitingPayment):
        response["outcome"] = "awaiting_payment"
        response["payment"] = {
            "amount": outcome.amount,
            "currency": outcome.currency,
            "open_order": outcome.order.to_dict() if outcome.order else None,
        }
    elif isinstance(outcome, Approved):
        response["outcome"] = "approved"
    elif isinstance(outcome, Rejected):
        response["outcome"] = "rejected"
    else:
        response["outcome"] = "more_info_requested"
    return response


@router.post("/applications/{application_id}/assign")
def assign(application_id: str, request: AssignRequest, actor: Actor = Depends(get_actor)):
    db = SessionLocal()
    try:
        reviewer_id = assign_application(db, application_id, actor, request.reviewer_id)
        return {"application_id": application_id, "assigned_to": reviewer_id}
    finally:
        db.close()


@router.post("/applications/{application_id}/payments")
def initiate_payment(application_id: str, actor: Actor = Depends(get_actor), gateway=Depends(get_gateway)):
    db = SessionLocal()
    try:
        application = load_application(db, application_id)
        _ensure_visible(application, actor)
        coordinator = PaymentCoordinator(db, gateway)

        try:
            descriptor = coordinator.create_order(application.id)
        except NotPayable:
            return {"payment_required": False, "application_status": application.status}
        except OrderAlreadyOpen as e:
            return _existing_order(coordinator, e.order)
        except GatewayUnavailable:
            if not get_settings().allow_fee_waiver:
                raise
            try:
                confirmation = coordinator.waive_fee(application.id)
            except OrderAlreadyOpen as e:
                return _existing_order(coordinator, e.order)
            return {
                "payment_required": False,
                "waived": True,
                "order_reference": confirmation.reference,
                "application_status": confirmation.application_status,
            }

        return {"payment_required": True, "existing": False, **descriptor.to_dict()}
    finally:
        db.close()


@router.get("/applications/{application_id}/payments")
def application_payments(application_id: str, actor: Actor = Depends(get_actor)):
    db = SessionLocal()
    try:
        application = load_application(db, application_id)
        _ensure_visible(application, actor)
        return {"data": [_order_dict(o) for o in list_orders(db, application.id)]}
    finally:
        db.close()


@router.post("/payments/{reference}/complete")
def report_payment_completion(
    reference: str,
    report: CompletionReport,
    actor: Actor = Depends(get_actor),
    gateway=Depends(get_gateway),
):
    db = SessionLocal()
    try:
        order = load_order(db, reference)
        _ensure_visible(order.application, actor)
        try:
            confirmation = PaymentCoordinator(db, gateway).confirm_order(reference, report.signature)
        except PaymentVerificationFailed as e:
            return JSONResponse(
                status_code=e.status_code,
                content={"status": "failed", "detail": e.message, "retryable": False},
            )
        return {
            "status": "confirmed",
            "order_reference": confirmation.reference,
            "application_id": confirmation.application_id,
            "application_status": confirmation.application_status,
        }
    finally:
        db.close()


@router.post("/payments/{reference}/cancel")
def cancel_payment(
    reference: str,
    request: CancelRequest,
    actor: Actor = Depends(get_actor),
    gateway=Depends(get_gateway),
):
    db = SessionLocal()
    try:
        order = load_order(db, reference)
        _ensure_visible(order.application, actor)
        descriptor = PaymentCoordinator(db, gateway).cancel_order(reference, request.reason)
        return {"status": descriptor.state, "order_reference": descriptor.reference}
    finally:
        db.close()
