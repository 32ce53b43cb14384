"""
SQLAlchemy ORM models for the registration and payment system.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from registrar.database.db import Base
from registrar.utils.datetime_utils import utcnow


class RegistrationStatus(str, enum.Enum):
    """Payment status of a single season/tournament registration."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class RegistrationKind(str, enum.Enum):
    """What a registration is for."""

    SEASON = "season"
    TOURNAMENT = "tournament"


class SubjectType(str, enum.Enum):
    """Who is registered."""

    PLAYER = "player"
    TEAM = "team"


class PaymentStatus(str, enum.Enum):
    """Payment status enum."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, enum.Enum):
    """Aggregate refund status of a payment (always derived from its refunds)."""

    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


class RefundEntryStatus(str, enum.Enum):
    """Status of one refund as reported by the gateway."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundSource(str, enum.Enum):
    """Where a refund entry came from."""

    DIRECT = "direct"
    GATEWAY_SYNC = "gateway_sync"


class ChargeAttemptStatus(str, enum.Enum):
    """Lifecycle of one charge attempt (the intent journal)."""

    STARTED = "started"  # locks taken, gateway call in flight (or process died)
    DECLINED = "declined"
    UNKNOWN = "unknown"  # gateway timed out / unavailable, outcome unknown
    SUCCEEDED = "succeeded"  # gateway confirmed, local write not yet committed
    COMMITTED = "committed"
    COMMIT_FAILED = "commit_failed"
    ABANDONED = "abandoned"  # never reached the gateway


class Guardian(Base):
    """Paying account holders."""

    __tablename__ = "guardians"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)  # stored lower-cased
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    role = Column(String(20), nullable=False, default="user")  # user, admin, coach
    payment_complete = Column(Boolean, nullable=False, default=False)  # derived, see status_projector
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships (ownership by reference: players/teams point back via guardian_id)
    players = relationship("Player", back_populates="guardian")
    teams = relationship("Team", back_populates="guardian")
    payments = relationship("Payment", back_populates="guardian")

    __table_args__ = (Index("idx_guardians_email", "email"),)


class Player(Base):
    """Registrants."""

    __tablename__ = "players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    guardian_id = Column(Integer, ForeignKey("guardians.id"), nullable=False)
    full_name = Column(String, nullable=False)
    gender = Column(String, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    school_name = Column(String, nullable=True)
    grade = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    guardian = relationship("Guardian", back_populates="players")
    seasons = relationship(
        "SeasonRegistration",
        back_populates="player",
        order_by="(SeasonRegistration.registration_date, SeasonRegistration.id)",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("idx_players_guardian_id", "guardian_id"),)


class SeasonRegistration(Base):
    """A player's entry for one season occurrence (the player-side copy of a Registration)."""

    __tablename__ = "season_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player_id = Column(Integer, ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    season = Column(String(20), nullable=False)  # Spring, Summer, Fall, Winter
    year = Column(Integer, nullable=False)
    tryout_id = Column(String(100), nullable=False)
    registration_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    payment_status = Column(String(20), nullable=False, default=RegistrationStatus.PENDING.value)
    payment_complete = Column(Boolean, nullable=False, default=False)
    package_type = Column(String(50), nullable=True)
    amount_paid = Column(Integer, nullable=True)  # minor units
    gateway_payment_id = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)
    card_brand = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    player = relationship("Player", back_populates="seasons")

    __table_args__ = (
        UniqueConstraint(
            "player_id", "season", "year", "tryout_id", name="uq_season_registration_identity"
        ),
        Index("idx_season_registrations_lookup", "season", "year", "tryout_id"),
    )


class Team(Base):
    """Tournament teams, managed by their primary coach's guardian account."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    guardian_id = Column(Integer, ForeignKey("guardians.id"), nullable=False)
    name = Column(String, nullable=False)
    grade = Column(String(5), nullable=True)
    sex = Column(String(10), nullable=True)  # Male, Female, Coed
    level_of_competition = Column(String(20), nullable=False, default="Gold")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    guardian = relationship("Guardian", back_populates="teams")
    tournaments = relationship(
        "TournamentRegistration",
        back_populates="team",
        order_by="(TournamentRegistration.registration_date, TournamentRegistration.id)",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("idx_teams_guardian_id", "guardian_id"),)


class TournamentRegistration(Base):
    """A team's entry for one tournament occurrence (the team-side copy of a Registration)."""

    __tablename__ = "tournament_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    tournament = Column(String(100), nullable=False)
    year = Column(Integer, nullable=False)
    tournament_id = Column(String(100), nullable=False)
    registration_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    payment_status = Column(String(20), nullable=False, default=RegistrationStatus.PENDING.value)
    payment_complete = Column(Boolean, nullable=False, default=False)
    level_of_competition = Column(String(20), nullable=False, default="Gold")
    amount_paid = Column(Integer, nullable=True)  # minor units
    gateway_payment_id = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)
    card_brand = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    team = relationship("Team", back_populates="tournaments")

    __table_args__ = (
        UniqueConstraint(
            "team_id", "tournament", "year", "tournament_id", name="uq_tournament_registration_identity"
        ),
    )


class Registration(Base):
    """
    Normalized, queryable mirror of every season/tournament entry.

    Keyed by the registration identity (subject, label, year, event id). The
    charge_attempt_id column is the identity lock held by an in-flight charge.
    """

    __tablename__ = "registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False)  # season, tournament
    subject_type = Column(String(20), nullable=False)  # player, team
    subject_id = Column(Integer, nullable=False)
    guardian_id = Column(Integer, ForeignKey("guardians.id"), nullable=False)
    label = Column(String(100), nullable=False)
    year = Column(Integer, nullable=False)
    event_id = Column(String(100), nullable=False)
    payment_status = Column(String(20), nullable=False, default=RegistrationStatus.PENDING.value)
    amount_paid = Column(Integer, nullable=True)  # minor units
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    charge_attempt_id = Column(Integer, ForeignKey("charge_attempts.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    payment = relationship("Payment", back_populates="registrations")
    charge_attempt = relationship("ChargeAttempt", back_populates="registrations")

    __table_args__ = (
        UniqueConstraint(
            "subject_type", "subject_id", "label", "year", "event_id", name="uq_registration_identity"
        ),
        Index("idx_registrations_guardian_id", "guardian_id"),
        Index("idx_registrations_payment_status", "payment_status"),
        Index("idx_registrations_charge_attempt_id", "charge_attempt_id"),
    )


class ChargeAttempt(Base):
    """
    Intent journal for one charge, written before the gateway is called.

    Lets a sweep find gateway charges that were never mirrored locally.
    """

    __tablename__ = "charge_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    guardian_id = Column(Integer, ForeignKey("guardians.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False, default="USD")
    buyer_email = Column(String, nullable=False)
    registration_ids = Column(Text, nullable=False)  # JSON list of Registration ids covered
    package_type = Column(String(50), nullable=True)
    location_id = Column(String(100), nullable=True)
    card_brand = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_exp_month = Column(String(2), nullable=True)
    card_exp_year = Column(String(4), nullable=True)
    status = Column(String(20), nullable=False, default=ChargeAttemptStatus.STARTED.value)
    gateway_payment_id = Column(String(255), nullable=True)
    gateway_status = Column(String(50), nullable=True)
    receipt_url = Column(String(500), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    registrations = relationship("Registration", back_populates="charge_attempt")

    __table_args__ = (
        Index("idx_charge_attempts_status_created", "status", "created_at"),
    )


class Payment(Base):
    """One confirmed charge against the payment gateway."""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway_payment_id = Column(String(255), nullable=False, unique=True)  # reconciliation anchor
    guardian_id = Column(Integer, ForeignKey("guardians.id"), nullable=False)
    idempotency_key = Column(String(64), nullable=True)
    location_id = Column(String(100), nullable=True)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    receipt_url = Column(String(500), nullable=True)
    card_brand = Column(String(50), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_exp_month = Column(String(2), nullable=True)
    card_exp_year = Column(String(4), nullable=True)
    refunded_amount = Column(Integer, nullable=False, default=0)  # derived from refunds
    refund_status = Column(String(20), nullable=False, default=RefundStatus.NONE.value)  # derived
    needs_review = Column(Boolean, nullable=False, default=False)
    review_note = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    guardian = relationship("Guardian", back_populates="payments")
    registrations = relationship("Registration", back_populates="payment")
    refunds = relationship(
        "Refund",
        back_populates="payment",
        order_by="Refund.id",
        cascade="all, delete-orphan",
    )
    status_history = relationship(
        "PaymentStatusChange",
        back_populates="payment",
        order_by="PaymentStatusChange.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint("refunded_amount <= amount", name="ck_payments_no_over_refund"),
        Index("idx_payments_guardian_id", "guardian_id"),
        Index("idx_payments_status_refund_status", "status", "refund_status"),
        Index("idx_payments_created_at", "created_at"),
    )


class Refund(Base):
    """
    A refund against a payment, keyed by the gateway's refund id.

    Failed entries stay in the ledger with the amount the gateway reported, so
    summing every row can exceed the payment amount. Only pending and completed
    entries count against the payment (see ``counted``); totals must use those.
    """

    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False)
    gateway_refund_id = Column(String(255), nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    reason = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default=RefundEntryStatus.COMPLETED.value)
    source = Column(String(20), nullable=False, default=RefundSource.GATEWAY_SYNC.value)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    payment = relationship("Payment", back_populates="refunds")

    __table_args__ = (
        UniqueConstraint("payment_id", "gateway_refund_id", name="uq_refunds_gateway_refund_id"),
        CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
    )

    @property
    def counted(self) -> bool:
        """True if this entry reduces the refundable balance (pending or completed)."""
        return self.status in (RefundEntryStatus.PENDING.value, RefundEntryStatus.COMPLETED.value)


class PaymentStatusChange(Base):
    """Audit log of payment status changes."""

    __tablename__ = "payment_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False)
    reason = Column(String(500), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    payment = relationship("Payment", back_populates="status_history")

    __table_args__ = (Index("idx_payment_status_history_payment_id", "payment_id"),)
