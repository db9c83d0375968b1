"""Persistence layer for plans, installments and interest rates.

The schema is defined with SQLAlchemy declarative models. ``Database`` wraps
engine and session factory creation; it defaults to SQLite for local
development but accepts any SQLAlchemy-compatible URL (e.g. PostgreSQL).
Services receive the session factory and open one transaction per
operation.
"""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .data_models import AmortizationMethod, InterestKind, MovementKind, PlanState, RateKind

Base = declarative_base()


def _new_id() -> str:
    return uuid4().hex


def _enum(enum_cls, name: str) -> SAEnum:
    # Store the lowercase values, not the member names.
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
    )


class InterestRateModel(Base):
    __tablename__ = "interest_rates"

    id = Column(String(32), primary_key=True, default=_new_id)
    kind = Column(_enum(RateKind, "rate_kind"), nullable=False, index=True)
    percentage = Column(Numeric(5, 2), nullable=False)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    reference = Column(String(255), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<InterestRate {self.kind.value} {self.percentage}% {self.valid_from}..{self.valid_to}>"


class PlanModel(Base):
    __tablename__ = "plans"

    id = Column(String(32), primary_key=True, default=_new_id)
    case_id = Column(String(64), nullable=False, index=True)
    principal = Column(Numeric(12, 2), nullable=False)
    installment_count = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=False)
    state = Column(String(20), nullable=False, default=PlanState.ACTIVE.value)
    close_date = Column(Date, nullable=True)
    recovered_amount = Column(Numeric(12, 2), nullable=True)
    amount_posted = Column(Boolean, nullable=False, default=False)
    recovery_movement_id = Column(String(32), nullable=True)
    note = Column(Text, nullable=True)

    applies_interest = Column(Boolean, nullable=False, default=False)
    interest_kind = Column(_enum(InterestKind, "interest_kind"), nullable=True)
    resolved_rate = Column(Numeric(5, 2), nullable=True)
    method = Column(_enum(AmortizationMethod, "amortization_method"), nullable=False,
                    default=AmortizationMethod.ITALIAN)
    interest_start_date = Column(Date, nullable=True)
    moratory_pre2013 = Column(Boolean, nullable=False, default=False)
    moratory_surcharge = Column(Boolean, nullable=False, default=False)
    moratory_surcharge_points = Column(Numeric(5, 2), nullable=True)
    total_interest = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    installments = relationship(
        "InstallmentModel",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="InstallmentModel.sequence_number",
        lazy="selectin",
    )

    @property
    def plan_state(self) -> PlanState:
        return PlanState(self.state)


# At most one active plan per case, checked by the database at commit.
Index(
    "uq_plans_active_case",
    PlanModel.case_id,
    unique=True,
    sqlite_where=PlanModel.state == PlanState.ACTIVE.value,
    postgresql_where=PlanModel.state == PlanState.ACTIVE.value,
)


class InstallmentModel(Base):
    __tablename__ = "installments"
    __table_args__ = (UniqueConstraint("plan_id", "sequence_number", name="uq_installments_plan_sequence"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    plan_id = Column(String(32), ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence_number = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    principal_portion = Column(Numeric(12, 2), nullable=False, default=0)
    interest_portion = Column(Numeric(12, 2), nullable=False, default=0)
    due_date = Column(Date, nullable=False)
    paid = Column(Boolean, nullable=False, default=False)
    payment_date = Column(Date, nullable=True)
    payment_method = Column(String(64), nullable=True)
    payment_reference = Column(String(128), nullable=True)
    receipt_location = Column(String(512), nullable=True)
    principal_movement_id = Column(String(32), nullable=True)
    interest_movement_id = Column(String(32), nullable=True)
    note = Column(Text, nullable=True)

    plan = relationship("PlanModel", back_populates="installments")


class MovementModel(Base):
    """A financial movement of the bundled SQL ledger."""

    __tablename__ = "movements"

    id = Column(String(32), primary_key=True, default=_new_id)
    case_id = Column(String(64), nullable=False, index=True)
    kind = Column(_enum(MovementKind, "movement_kind"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    date = Column(Date, nullable=False)
    memo = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class HistoryEventModel(Base):
    """An audit event of the bundled SQL case history."""

    __tablename__ = "case_history"

    id = Column(String(32), primary_key=True, default=_new_id)
    case_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    payload_json = Column(Text, nullable=False)
    actor = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Database:
    """Engine and session factory for a debt-plan database."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory database.
            self._engine = create_engine(
                url,
                future=True,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(url, future=True, echo=echo)
        Base.metadata.create_all(self._engine)
        self.session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)

    @property
    def engine(self):
        return self._engine

    def dispose(self) -> None:
        self._engine.dispose()
