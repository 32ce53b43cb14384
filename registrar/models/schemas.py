"""
Pydantic models for API request/response validation.

Amounts are integer minor units (cents) everywhere.
"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, model_validator
from registrar.utils.datetime_utils import ensure_aware


class ErrorResponse(BaseModel):
    """Body returned for every registrar error."""

    error: str
    detail: str
    idempotency_key: Optional[str] = None
    gateway_payment_id: Optional[str] = None


# --- Registrations ---


class SeasonRegistrationCreate(BaseModel):
    """Request to register a player for a season."""

    season: str  # Spring, Summer, Fall, Winter
    year: int
    tryout_id: Optional[str] = None  # derived from season and year when omitted
    package_type: Optional[str] = None


class TournamentRegistrationCreate(BaseModel):
    """Request to register a team for a tournament."""

    tournament: str
    year: int
    tournament_id: Optional[str] = None  # derived from tournament and year when omitted
    level_of_competition: Optional[str] = None


class RegistrationResponse(BaseModel):
    """Normalized registration row."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    kind: str
    subject_type: str
    subject_id: int
    guardian_id: int
    label: str
    year: int
    event_id: str
    payment_status: str
    amount_paid: Optional[int] = None
    payment_id: Optional[int] = None
    charge_attempt_id: Optional[int] = None


class SeasonEntryResponse(BaseModel):
    """A player's season entry."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    player_id: int
    season: str
    year: int
    tryout_id: str
    registration_date: Optional[datetime] = None
    payment_status: str
    payment_complete: bool
    package_type: Optional[str] = None
    amount_paid: Optional[int] = None
    gateway_payment_id: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None


class TournamentEntryResponse(BaseModel):
    """A team's tournament entry."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    team_id: int
    tournament: str
    year: int
    tournament_id: str
    registration_date: Optional[datetime] = None
    payment_status: str
    payment_complete: bool
    level_of_competition: str
    amount_paid: Optional[int] = None
    gateway_payment_id: Optional[str] = None
    payment_date: Optional[datetime] = None


class SeasonRegistrationResponse(BaseModel):
    entry: SeasonEntryResponse
    registration: RegistrationResponse


class TournamentRegistrationResponse(BaseModel):
    entry: TournamentEntryResponse
    registration: RegistrationResponse


class PlayerSeasonsResponse(BaseModel):
    """All season entries of a player plus the derived current season."""

    player_id: int
    seasons: List[SeasonEntryResponse]
    current_season: Optional[SeasonEntryResponse] = None


# --- Payments ---


class CardSummaryIn(BaseModel):
    """Card details shown back to the guardian (never the card number)."""

    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None


class ChargeRequest(BaseModel):
    """Request to pay for one or more pending registrations."""

    source_token: str
    amount: int
    registration_ids: List[int]
    buyer_email: str
    currency: str = "USD"
    card: Optional[CardSummaryIn] = None
    package_type: Optional[str] = None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    gateway_refund_id: str
    amount: int
    reason: Optional[str] = None
    status: str
    source: str
    processed_at: Optional[datetime] = None
    # False for failed refunds, which never reduced the refunded total
    counted: bool = True


class PaymentResponse(BaseModel):
    """A recorded payment with its refund ledger."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    gateway_payment_id: str
    guardian_id: int
    amount: int
    currency: str
    status: str
    receipt_url: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    refunded_amount: int
    refund_status: str
    needs_review: bool
    processed_at: Optional[datetime] = None
    registration_ids: List[int] = []
    refunds: List[RefundResponse] = []


class ChargeResponse(BaseModel):
    payment: PaymentResponse
    idempotency_key: str
    registrations: List[RegistrationResponse]
    replayed: bool = False
    conflicts: List[int] = []


class ChargeAttemptResponse(BaseModel):
    """State of a charge attempt, after asking the gateway when it was still open."""

    idempotency_key: str
    status: str
    gateway_payment_id: Optional[str] = None
    detail: Optional[str] = None
    payment: Optional[PaymentResponse] = None


# --- Refunds ---


class RefundCreate(BaseModel):
    """Direct refund request (admin)."""

    amount: int
    reason: Optional[str] = None


class RefundEligibilityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    payment_id: int
    gateway_payment_id: str
    amount: int
    refunded_amount: int
    available_amount: int
    currency: str
    status: str
    refund_status: str
    eligible: bool
    reason: Optional[str] = None


class ReconciliationConflictResponse(BaseModel):
    gateway_refund_id: Optional[str] = None
    kept_amount: Optional[int] = None
    incoming_amount: Optional[int] = None
    detail: str


class ReconcileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    payment_id: int
    gateway_payment_id: str
    refunds_added: List[str]
    refunds_updated: List[str]
    refunded_amount: int
    refund_status: str
    status: str
    needs_review: bool
    conflicts: List[ReconciliationConflictResponse] = []


class RefundSyncRequest(BaseModel):
    """Batch refund sync; with a begin/end window only refunds issued in it are fetched."""

    begin: Optional[datetime] = None
    end: Optional[datetime] = None
    recover_orphans: bool = False

    @model_validator(mode="after")
    def validate_window(self):
        """Ensure begin is not after end when both are given."""
        if self.begin and self.end and ensure_aware(self.begin) > ensure_aware(self.end):
            raise ValueError("begin must be before end")
        return self


class RefundSyncResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    refunds_added: int
    conflicts: int
    errors: List[str] = []
    unknown_payments: List[str] = []
    orphaned_charges: Optional[dict] = None
