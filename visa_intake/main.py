import stripe
from fastapi import Depends, FastAPI, Request, Header, HTTPException
from fastapi.responses import JSONResponse

from visa_intake.routes import router
from visa_intake.database import Base, engine, SessionLocal
from visa_intake.errors import WorkflowError
from visa_intake.gateway import get_gateway
from visa_intake.logging_config import setup_logging
from visa_intake.payments import PaymentCoordinator, handle_gateway_event

setup_logging()

app = FastAPI(title="Visa Application Intake Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "retryable": exc.retryable},
    )


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    gateway=Depends(get_gateway),
):
    if gateway is None:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured")

    payload = await request.body()

    try:
        event = gateway.construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    db = SessionLocal()
    try:
        handle_gateway_event(PaymentCoordinator(db, gateway), event)
    finally:
        db.close()
    return {"ok": True}
