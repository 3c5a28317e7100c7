import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from visa_intake.database import Base


def utcnow():
    # naive UTC, SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


def default_application_number():
    date = utcnow().strftime("%Y%m%d")
    token = secrets.token_hex(4).upper()
    return f"APP-{date}-{token}"


class Country(Base):
    __tablename__ = "countries"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    code = Column(String(3), nullable=False)
    is_active = Column(Boolean, default=True)

    visa_types = relationship("VisaType", back_populates="country")


class VisaType(Base):
    __tablename__ = "visa_types"

    id = Column(String, primary_key=True, default=new_id)
    country_id = Column(String, ForeignKey("countries.id"), nullable=False)
    name = Column(String, nullable=False)
    fee_amount = Column(Integer, nullable=False, default=0)   # minor units (paise/cents)
    currency = Column(String(3))
    is_active = Column(Boolean, default=True)

    country = relationship("Country", back_populates="visa_types")


class Application(Base):
    __tablename__ = "applications"

    id = Column(String, primary_key=True, default=new_id)
    number = Column(String, unique=True, index=True, nullable=False, default=default_application_number)
    status = Column(String, nullable=False, default="draft")  # draft | under_review | resent | approved | rejected
    country_id = Column(String, ForeignKey("countries.id"), nullable=False)
    visa_type_id = Column(String, ForeignKey("visa_types.id"), nullable=False)
    customer_id = Column(String, index=True, nullable=False)
    assigned_to = Column(String, index=True)                  # reviewer id, NULL while in the open queue

    comment = Column(Text)                                    # set by the last status-changing action
    payment_requested_by = Column(String)                     # reviewer who approved pending payment
    payment_requested_at = Column(DateTime)

    submitted_at = Column(DateTime)
    reviewed_at = Column(DateTime)
    decided_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    country = relationship("Country")
    visa_type = relationship("VisaType")
    comments = relationship(
        "ApplicationComment",
        back_populates="application",
        order_by="ApplicationComment.seq",
    )

    __mapper_args__ = {"version_id_col": version}


class ApplicationComment(Base):
    __tablename__ = "application_comments"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(String, ForeignKey("applications.id"), index=True, nullable=False)
    action = Column(String, nullable=False)
    old_status = Column(String)
    new_status = Column(String, nullable=False)
    actor_id = Column(String, nullable=False)
    actor_role = Column(String, nullable=False)
    body = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    application = relationship("Application", back_populates="comments")


class PaymentOrder(Base):
    __tablename__ = "payment_orders"

    id = Column(String, primary_key=True, default=new_id)
    reference = Column(String, unique=True, index=True)       # gateway order id, set once the gateway answers
    application_id = Column(String, ForeignKey("applications.id"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)                  # minor units, copied from the visa type at creation
    currency = Column(String(3), nullable=False)
    state = Column(String, nullable=False, default="created")  # created | awaiting_confirmation | confirmed | cancelled | failed
    # equals application_id while the order is open, NULL otherwise
    open_slot = Column(String, unique=True)
    client_token = Column(String)
    payment_reference = Column(String)
    waived = Column(Boolean, default=False, nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    confirmed_at = Column(DateTime)
    version = Column(Integer, nullable=False)

    application = relationship("Application")

    __mapper_args__ = {"version_id_col": version}
