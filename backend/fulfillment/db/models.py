from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class StockLine(Base):
    __tablename__ = "stock_lines"
    __table_args__ = (
        CheckConstraint("total_on_hand >= 0", name="ck_stock_lines_total_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_stock_lines_reserved_non_negative"),
        CheckConstraint("reserved <= total_on_hand", name="ck_stock_lines_reserved_within_total"),
    )

    product_id = Column(String, primary_key=True)
    total_on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    holds = relationship("StockHold", back_populates="stock_line")


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index("ix_reservations_status_expires", "status", "expires_at"),
        Index("ix_reservations_owner_status", "cart_owner_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_owner_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="held")  # held | committed | released | expired
    amount_due = Column(Numeric(12, 2), nullable=True)

    expires_at = Column(DateTime, nullable=False)
    committed_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    reason = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    holds = relationship(
        "StockHold",
        back_populates="reservation",
        order_by="StockHold.product_id",
    )
    payment_claims = relationship("PaymentClaim", back_populates="reservation")
    order = relationship("AdmittedOrder", back_populates="reservation", uselist=False)


class StockHold(Base):
    __tablename__ = "stock_holds"
    __table_args__ = (
        Index("ix_stock_holds_product_status", "product_id", "status"),
        CheckConstraint("quantity > 0", name="ck_stock_holds_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(
        String,
        ForeignKey("stock_lines.product_id", ondelete="RESTRICT"),
        nullable=False,
    )
    reservation_id = Column(
        Integer,
        ForeignKey("reservations.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    quantity = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="held")  # held | committed | released

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    settled_at = Column(DateTime, nullable=True)

    stock_line = relationship("StockLine", back_populates="holds")
    reservation = relationship("Reservation", back_populates="holds")


class PaymentClaim(Base):
    __tablename__ = "payment_claims"
    __table_args__ = (
        Index(
            "uq_payment_claims_locked_reference",
            "reference_number",
            unique=True,
            postgresql_where=text("reference_locked IS TRUE"),
            sqlite_where=text("reference_locked = 1"),
        ),
        Index("ix_payment_claims_reservation_status", "reservation_id", "status"),
        Index("ix_payment_claims_status_updated", "status", "updated_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(
        Integer,
        ForeignKey("reservations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    order_id = Column(
        Integer,
        ForeignKey("admitted_orders.id", ondelete="SET NULL"),
        nullable=True,
    )

    payer_phone = Column(String, nullable=False)
    payer_id_number = Column(String, nullable=True)
    origin_bank_code = Column(String, nullable=False)
    reference_number = Column(String, nullable=False, index=True)
    claimed_amount = Column(Numeric(12, 2), nullable=False)
    claimed_date = Column(Date, nullable=False)
    receipt_image_ref = Column(String, nullable=True)

    # submitted | verifying | verified | rejected | duplicate
    status = Column(String, nullable=False, default="submitted")
    reason_code = Column(String, nullable=True)
    reason_message = Column(String, nullable=True)
    manual_review = Column(Boolean, nullable=False, default=False)
    reference_locked = Column(Boolean, nullable=False, default=True)

    gateway_reference_code = Column(String, nullable=True)
    verified_amount = Column(Numeric(12, 2), nullable=True)

    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String, nullable=True)
    review_note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    reservation = relationship("Reservation", back_populates="payment_claims")
    attempts = relationship(
        "VerificationAttempt",
        back_populates="claim",
        order_by="VerificationAttempt.attempt_number",
    )


class VerificationAttempt(Base):
    __tablename__ = "verification_attempts"
    __table_args__ = (
        UniqueConstraint("claim_id", "attempt_number", name="uq_verification_attempts_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(
        Integer,
        ForeignKey("payment_claims.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    attempt_number = Column(Integer, nullable=False)
    request_payload = Column(Text, nullable=False)
    response_code = Column(Integer, nullable=True)
    outcome = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    claim = relationship("PaymentClaim", back_populates="attempts")


class AdmittedOrder(Base):
    __tablename__ = "admitted_orders"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(
        Integer,
        ForeignKey("reservations.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    payment_claim_id = Column(Integer, nullable=False, unique=True)
    cart_owner_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    reservation = relationship("Reservation", back_populates="order")


class OrderEvent(Base):
    __tablename__ = "order_events"
    __table_args__ = (
        Index("ix_order_events_status_created", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False)
    order_id = Column(
        Integer,
        ForeignKey("admitted_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payload = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | dispatched
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True)
