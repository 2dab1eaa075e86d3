import enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DECIMAL,
    Date,
    DateTime,
    Enum,
    ForeignKeyConstraint,
    Index,
    Integer,
    JSON,
    String,
    Table,
    Text,
    Time,
    event,
    func,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()
metadata = Base.metadata


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class RewardStatus(str, enum.Enum):
    AVAILABLE = "available"
    USED = "used"
    EXPIRED = "expired"


class DiscountType(str, enum.Enum):
    PERCENT = "PERCENT"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class PaymentMethodType(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"
    MOBILE = "mobile"


def _enum_column(enum_cls, **kwargs):
    return mapped_column(
        Enum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            validate_strings=True,
            length=20,
        ),
        **kwargs,
    )


service_staff = Table(
    "service_staff",
    metadata,
    Column("service_id", Integer, primary_key=True),
    Column("staff_id", Integer, primary_key=True),
    ForeignKeyConstraint(
        ["service_id"], ["service.id"], ondelete="CASCADE", name="fk_ss_service"
    ),
    ForeignKeyConstraint(
        ["staff_id"], ["staff.id"], ondelete="CASCADE", name="fk_ss_staff"
    ),
    Index("fk_ss_staff", "staff_id"),
)


class Service(Base):
    __tablename__ = "service"
    __table_args__ = (Index("idx_service_tenant", "tenant_id"),)

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id = mapped_column(Integer, nullable=False)
    name = mapped_column(String(100), nullable=False)
    description = mapped_column(Text)
    category = mapped_column(String(50))
    price = mapped_column(DECIMAL(10, 2), nullable=False, server_default=text("'0.00'"))
    duration = mapped_column(Integer, nullable=False, server_default=text("'30'"))
    buffer_after = mapped_column(Integer, nullable=False, server_default=text("'0'"))
    staff_required = mapped_column(Boolean, nullable=False, server_default=text("'1'"))
    is_active = mapped_column(Boolean, nullable=False, server_default=text("'1'"))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    promotion: Mapped[Optional["Promotion"]] = relationship(
        "Promotion", uselist=False, back_populates="service"
    )
    staff: Mapped[List["Staff"]] = relationship(
        "Staff", secondary=service_staff, back_populates="services"
    )
    appointment: Mapped[List["Appointment"]] = relationship(
        "Appointment", uselist=True, back_populates="service"
    )


class Promotion(Base):
    __tablename__ = "promotion"
    __table_args__ = (
        ForeignKeyConstraint(
            ["service_id"], ["service.id"], ondelete="CASCADE", name="fk_promo_service"
        ),
        Index("uq_promo_service", "service_id", unique=True),
        CheckConstraint("discount_value > 0", name="ck_promo_value_positive"),
        CheckConstraint(
            "discount_type <> 'PERCENT' OR discount_value BETWEEN 1 AND 99",
            name="ck_promo_percent_range",
        ),
        CheckConstraint("ends_at >= starts_at", name="ck_promo_window"),
    )

    id = mapped_column(Integer, primary_key=True)
    service_id = mapped_column(Integer, nullable=False)
    title = mapped_column(String(100), nullable=False)
    description = mapped_column(String(255))
    discount_type = _enum_column(DiscountType, nullable=False)
    discount_value = mapped_column(DECIMAL(10, 2), nullable=False)
    starts_at = mapped_column(DateTime, nullable=False)
    ends_at = mapped_column(DateTime, nullable=False)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    service: Mapped["Service"] = relationship("Service", back_populates="promotion")

    def validate_terms(self):
        """Reject promotion terms the pricing composer must never see."""
        if self.discount_type == DiscountType.PERCENT:
            if not (1 <= self.discount_value <= 99):
                raise ValueError("Percentage promotions must be between 1 and 99")
        elif self.discount_value is None or self.discount_value <= 0:
            raise ValueError("Fixed-amount promotions must be greater than zero")
        if self.starts_at and self.ends_at and self.ends_at < self.starts_at:
            raise ValueError("Promotion end must not be before its start")

    def is_running(self, now) -> bool:
        return self.starts_at <= now <= self.ends_at


@event.listens_for(Promotion, "before_insert")
@event.listens_for(Promotion, "before_update")
def _check_promotion_terms(mapper, connection, promotion):
    promotion.validate_terms()


class BusinessHours(Base):
    """A tenant's opening hours for one weekday (0 is Monday)."""

    __tablename__ = "business_hours"
    __table_args__ = (
        Index("uq_hours_tenant_day", "tenant_id", "weekday", unique=True),
        CheckConstraint("weekday BETWEEN 0 AND 6", name="ck_hours_weekday"),
    )

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    weekday = mapped_column(Integer, nullable=False)
    is_open = mapped_column(Boolean, nullable=False, server_default=text("'1'"))
    open_time = mapped_column(Time)
    close_time = mapped_column(Time)


class Staff(Base):
    __tablename__ = "staff"
    __table_args__ = (Index("idx_staff_tenant", "tenant_id"),)

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer, nullable=False)
    first_name = mapped_column(String(100))
    last_name = mapped_column(String(100))
    specialization = mapped_column(String(100))
    is_active = mapped_column(Boolean, nullable=False, server_default=text("'1'"))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    services: Mapped[List["Service"]] = relationship(
        "Service", secondary=service_staff, back_populates="staff"
    )
    appointment: Mapped[List["Appointment"]] = relationship(
        "Appointment", uselist=True, back_populates="staff"
    )


class PaymentMethod(Base):
    __tablename__ = "payment_method"
    __table_args__ = (Index("idx_pm_tenant", "tenant_id", "sort_order"),)

    id = mapped_column(Integer, primary_key=True)
    tenant_id = mapped_column(Integer)
    name = mapped_column(String(50), nullable=False)
    type = _enum_column(PaymentMethodType, nullable=False)
    description = mapped_column(String(255))
    is_active = mapped_column(Boolean, nullable=False, server_default=text("'1'"))
    requires_reference = mapped_column(
        Boolean, nullable=False, server_default=text("'0'")
    )
    processing_fee_percentage = mapped_column(
        DECIMAL(5, 2), nullable=False, server_default=text("'0.00'")
    )
    processing_fee_fixed = mapped_column(
        DECIMAL(10, 2), nullable=False, server_default=text("'0.00'")
    )
    sort_order = mapped_column(Integer, nullable=False, server_default=text("'0'"))

    payment: Mapped[List["Payment"]] = relationship(
        "Payment", uselist=True, back_populates="payment_method"
    )


class Reward(Base):
    __tablename__ = "reward"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"],
            ["appointment.id"],
            ondelete="SET NULL",
            name="fk_reward_appointment",
        ),
        Index("idx_reward_user", "user_id", "status"),
        Index("idx_reward_appointment", "appointment_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    user_id = mapped_column(Integer, nullable=False)
    type = mapped_column(String(20), comment="referral, loyalty, promotion, birthday")
    title = mapped_column(String(100))
    value = mapped_column(DECIMAL(10, 2), nullable=False)
    status = _enum_column(
        RewardStatus, nullable=False, server_default=text("'available'")
    )
    expires_at = mapped_column(DateTime)
    used_at = mapped_column(DateTime)
    appointment_id = mapped_column(Integer)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    def is_expired(self, now) -> bool:
        return self.status == RewardStatus.EXPIRED or (
            self.expires_at is not None and self.expires_at < now
        )


class Reservation(Base):
    """Committed occupancy of a staff member (or tenant lane) on a date."""

    __tablename__ = "reservation"
    __table_args__ = (
        Index("uq_reservation_token", "token", unique=True),
        Index("idx_reservation_lane", "tenant_id", "staff_id", "date"),
    )

    id = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    token = mapped_column(String(36), nullable=False)
    tenant_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer)
    date = mapped_column(Date, nullable=False)
    start_at = mapped_column(DateTime, nullable=False)
    end_at = mapped_column(DateTime, nullable=False)
    created_at = mapped_column(DateTime, nullable=False)
    released_at = mapped_column(DateTime)


class CalendarLane(Base):
    """
    One row per booking lane. Reservers bump ``version`` to hold the row
    lock until they commit; ``lane`` is the staff id, or 0 for the tenant lane.
    """

    __tablename__ = "calendar_lane"

    tenant_id = mapped_column(Integer, primary_key=True, autoincrement=False)
    lane = mapped_column(Integer, primary_key=True, autoincrement=False)
    version = mapped_column(BigInteger, nullable=False, server_default=text("0"))


class Appointment(Base):
    __tablename__ = "appointment"
    __table_args__ = (
        ForeignKeyConstraint(["service_id"], ["service.id"], name="fk_ap_service"),
        ForeignKeyConstraint(["staff_id"], ["staff.id"], name="fk_ap_staff"),
        ForeignKeyConstraint(
            ["payment_method_id"], ["payment_method.id"], name="fk_ap_pay_method"
        ),
        Index("uq_booking_reference", "booking_reference", unique=True),
        Index("idx_ap_customer", "customer_id", "start_at"),
        Index("idx_ap_staff", "staff_id", "start_at"),
        Index("idx_ap_status_created", "status", "created_at"),
    )

    id = mapped_column(Integer, primary_key=True)
    booking_reference = mapped_column(String(16), nullable=False)
    tenant_id = mapped_column(Integer, nullable=False)
    service_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer)
    customer_id = mapped_column(Integer, nullable=False)
    appointment_date = mapped_column(Date, nullable=False)
    appointment_time = mapped_column(Time, nullable=False)
    start_at = mapped_column(DateTime, nullable=False)
    end_at = mapped_column(DateTime, nullable=False)

    # Snapshot of the service at booking time
    service_name = mapped_column(String(100))
    duration_minutes = mapped_column(Integer, nullable=False)
    buffer_minutes = mapped_column(Integer, nullable=False, server_default=text("'0'"))
    price = mapped_column(DECIMAL(10, 2), nullable=False)
    discount_amount = mapped_column(
        DECIMAL(10, 2), nullable=False, server_default=text("'0.00'")
    )
    reward_amount = mapped_column(
        DECIMAL(10, 2), nullable=False, server_default=text("'0.00'")
    )
    fee_amount = mapped_column(
        DECIMAL(10, 2), nullable=False, server_default=text("'0.00'")
    )
    total_price = mapped_column(DECIMAL(10, 2), nullable=False)
    refund_amount = mapped_column(DECIMAL(10, 2))

    payment_method_id = mapped_column(Integer, nullable=False)
    reward_id = mapped_column(Integer)
    reservation_token = mapped_column(String(36))
    status = _enum_column(
        AppointmentStatus, nullable=False, server_default=text("'pending'")
    )
    cancellation_reason = mapped_column(Text)
    notes = mapped_column(Text)
    confirmed_at = mapped_column(DateTime)
    cancelled_at = mapped_column(DateTime)
    completed_at = mapped_column(DateTime)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    service: Mapped["Service"] = relationship("Service", back_populates="appointment")
    staff: Mapped[Optional["Staff"]] = relationship(
        "Staff", back_populates="appointment"
    )
    payment_method: Mapped["PaymentMethod"] = relationship("PaymentMethod")
    payment: Mapped[Optional["Payment"]] = relationship(
        "Payment", uselist=False, back_populates="appointment"
    )
    status_log: Mapped[List["AppointmentStatusLog"]] = relationship(
        "AppointmentStatusLog",
        uselist=True,
        back_populates="appointment",
        order_by="AppointmentStatusLog.id",
    )


class Payment(Base):
    __tablename__ = "payment"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"], ["appointment.id"], name="fk_pay_appointment"
        ),
        ForeignKeyConstraint(
            ["payment_method_id"], ["payment_method.id"], name="fk_pay_method"
        ),
        Index("uq_payment_reference", "reference", unique=True),
        Index("fk_pay_appointment", "appointment_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    user_id = mapped_column(Integer, nullable=False)
    payment_method_id = mapped_column(Integer, nullable=False)
    amount = mapped_column(DECIMAL(10, 2), nullable=False)
    method_type = _enum_column(PaymentMethodType, nullable=False)
    status = _enum_column(
        PaymentStatus, nullable=False, server_default=text("'pending'")
    )
    reference = mapped_column(String(100), nullable=False)
    paid_at = mapped_column(DateTime)
    gateway_response = mapped_column(JSON)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="payment"
    )
    payment_method: Mapped["PaymentMethod"] = relationship(
        "PaymentMethod", back_populates="payment"
    )


class AppointmentStatusLog(Base):
    __tablename__ = "appointment_status_log"
    __table_args__ = (
        ForeignKeyConstraint(
            ["appointment_id"],
            ["appointment.id"],
            ondelete="CASCADE",
            name="fk_asl_appointment",
        ),
        Index("fk_asl_appointment", "appointment_id"),
        {"comment": "Audit trail of appointment status transitions."},
    )

    id = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    appointment_id = mapped_column(Integer, nullable=False)
    from_status = mapped_column(String(20))
    to_status = mapped_column(String(20), nullable=False)
    actor_role = mapped_column(String(20), nullable=False)
    actor_id = mapped_column(Integer)
    reason = mapped_column(String(255))
    changed_at = mapped_column(DateTime, nullable=False)
    details = mapped_column(JSON)

    appointment: Mapped["Appointment"] = relationship(
        "Appointment", back_populates="status_log"
    )
