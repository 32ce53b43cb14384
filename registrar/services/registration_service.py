"""
Registration identity manager.

Computes the canonical identity key of a season/tournament registration and
guarantees at most one registration exists per key. Every registration is
written twice: as an entry on the player/team (SeasonRegistration or
TournamentRegistration) and as a normalized Registration row. Both copies are
created and updated together, through the status projector.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registrar.database.models import (
    Guardian,
    Player,
    Registration,
    RegistrationKind,
    RegistrationStatus,
    SeasonRegistration,
    SubjectType,
    Team,
    TournamentRegistration,
)
from registrar.services import status_projector
from registrar.services.errors import (
    DuplicateRegistration,
    Forbidden,
    InvalidRequest,
    NotFound,
)
from registrar.utils.constants import (
    DEFAULT_LEVEL_OF_COMPETITION,
    LEVELS_OF_COMPETITION,
    MAX_YEARS_AHEAD,
    MIN_REGISTRATION_YEAR,
    SEASON_LABELS,
)
from registrar.utils.datetime_utils import utcnow
from registrar.utils.slugify import make_event_id

logger = logging.getLogger(__name__)

Entry = Union[SeasonRegistration, TournamentRegistration]

# Statuses under which an existing registration may be reused by a new attempt
REUSABLE_STATUSES = (RegistrationStatus.PENDING.value, RegistrationStatus.FAILED.value)


@dataclass(frozen=True)
class IdentityKey:
    """Canonical identity of one subject's registration for one event occurrence."""

    subject_type: str
    subject_id: int
    label: str
    year: int
    event_id: str


def reserve(
    subject_type: str,
    subject_id: int,
    label: str,
    year: int,
    explicit_id: Optional[str] = None,
) -> IdentityKey:
    """
    Compute the identity key for a registration.

    Without an explicit id the event id is derived from label and year
    (``fall-2025``), for every event. Two attempts for the same occurrence
    therefore always produce the same key.

    Args:
        subject_type: "player" or "team"
        subject_id: Player or team ID
        label: Season label or tournament name
        year: Event year
        explicit_id: Tryout/tournament id supplied by the caller, if any

    Returns:
        IdentityKey
    """
    label = (label or "").strip()
    if not label:
        raise InvalidRequest("Event label is required")
    event_id = (explicit_id or "").strip()
    if not event_id:
        try:
            event_id = make_event_id(label, year)
        except ValueError as e:
            raise InvalidRequest(str(e))
    return IdentityKey(
        subject_type=subject_type,
        subject_id=int(subject_id),
        label=label,
        year=int(year),
        event_id=event_id,
    )


async def find_registration(session: AsyncSession, key: IdentityKey) -> Optional[Registration]:
    result = await session.execute(
        select(Registration).where(
            Registration.subject_type == key.subject_type,
            Registration.subject_id == key.subject_id,
            Registration.label == key.label,
            Registration.year == key.year,
            Registration.event_id == key.event_id,
        )
    )
    return result.scalar_one_or_none()


async def ensure_unique(session: AsyncSession, key: IdentityKey) -> Optional[Registration]:
    """
    Check that a new registration for ``key`` may proceed.

    Args:
        session: Database session
        key: Identity key from reserve()

    Returns:
        The existing pending/failed Registration to reuse, or None if there is none

    Raises:
        DuplicateRegistration: A registration for the key is already paid or refunded
    """
    existing = await find_registration(session, key)
    if existing is None:
        return None
    if existing.payment_status in REUSABLE_STATUSES:
        return existing
    raise DuplicateRegistration(
        f"{key.subject_type.title()} {key.subject_id} is already registered for "
        f"{key.label} {key.year} ({key.event_id}) with status '{existing.payment_status}'"
    )


def normalize_season_label(season: str) -> str:
    label = (season or "").strip().title()
    if label not in SEASON_LABELS:
        raise InvalidRequest(f"Season must be one of: {', '.join(SEASON_LABELS)}")
    return label


def validate_year(year: int) -> int:
    """Registrations are accepted from 2020 up to two years ahead of the current year."""
    max_year = utcnow().year + MAX_YEARS_AHEAD
    if not isinstance(year, int) or year < MIN_REGISTRATION_YEAR or year > max_year:
        raise InvalidRequest(f"Year must be between {MIN_REGISTRATION_YEAR} and {max_year}")
    return year


def _check_owner(owner_guardian_id: int, guardian_id: int, is_admin: bool, what: str) -> None:
    if not is_admin and owner_guardian_id != guardian_id:
        raise Forbidden(f"You do not manage this {what}")


async def get_entry_for_registration(session: AsyncSession, registration: Registration) -> Optional[Entry]:
    """Load the player/team-side entry mirrored by a Registration row."""
    if registration.kind == RegistrationKind.SEASON.value:
        stmt = select(SeasonRegistration).where(
            SeasonRegistration.player_id == registration.subject_id,
            SeasonRegistration.season == registration.label,
            SeasonRegistration.year == registration.year,
            SeasonRegistration.tryout_id == registration.event_id,
        )
    else:
        stmt = select(TournamentRegistration).where(
            TournamentRegistration.team_id == registration.subject_id,
            TournamentRegistration.tournament == registration.label,
            TournamentRegistration.year == registration.year,
            TournamentRegistration.tournament_id == registration.event_id,
        )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def recompute_guardian_payment_complete(session: AsyncSession, guardian_id: int) -> bool:
    """
    Recompute and store Guardian.payment_complete from the guardian's registrations.

    Only flushes; the caller owns the transaction.
    """
    guardian = await session.get(Guardian, guardian_id)
    if guardian is None:
        raise NotFound(f"Guardian {guardian_id} not found")
    await session.flush()
    result = await session.execute(
        select(Registration.payment_status).where(Registration.guardian_id == guardian_id)
    )
    complete = status_projector.project_guardian_payment_complete(result.scalars().all())
    guardian.payment_complete = complete
    await session.flush()
    return complete


def _new_entry(kind: str, key: IdentityKey, package_type: Optional[str], level_of_competition: Optional[str]) -> Entry:
    if kind == RegistrationKind.SEASON.value:
        return SeasonRegistration(
            player_id=key.subject_id,
            season=key.label,
            year=key.year,
            tryout_id=key.event_id,
            package_type=package_type,
            registration_date=utcnow(),
        )
    return TournamentRegistration(
        team_id=key.subject_id,
        tournament=key.label,
        year=key.year,
        tournament_id=key.event_id,
        level_of_competition=level_of_competition or DEFAULT_LEVEL_OF_COMPETITION,
        registration_date=utcnow(),
    )


async def _reuse(
    session: AsyncSession,
    kind: str,
    key: IdentityKey,
    registration: Registration,
    package_type: Optional[str],
    level_of_competition: Optional[str],
) -> Tuple[Entry, Registration]:
    """Reuse an existing pending/failed registration; a failed one goes back to pending."""
    entry = await get_entry_for_registration(session, registration)
    if entry is None:
        # Mirror row without its entry; recreate the entry so both copies exist again
        entry = _new_entry(kind, key, package_type, level_of_competition)
        session.add(entry)
    if registration.payment_status == RegistrationStatus.FAILED.value:
        status_projector.assert_registration_transition(registration.payment_status, RegistrationStatus.PENDING.value)
        status_projector.write_registration_status(entry, registration, RegistrationStatus.PENDING.value)
    if package_type and kind == RegistrationKind.SEASON.value:
        entry.package_type = package_type
    logger.info(f"Reusing registration {registration.id} for {key}")
    return entry, registration


async def _register(
    session: AsyncSession,
    kind: str,
    key: IdentityKey,
    guardian_id: int,
    package_type: Optional[str] = None,
    level_of_competition: Optional[str] = None,
) -> Tuple[Entry, Registration]:
    """
    Create (or reuse) the entry/Registration pair for ``key`` and commit.

    This call is its own unit of work: a unique-constraint race on insert rolls
    the session back, re-reads the winner's row and reuses it.
    """
    existing = await ensure_unique(session, key)
    if existing is not None:
        entry, registration = await _reuse(session, kind, key, existing, package_type, level_of_competition)
    else:
        entry = _new_entry(kind, key, package_type, level_of_competition)
        registration = Registration(
            kind=kind,
            subject_type=key.subject_type,
            subject_id=key.subject_id,
            guardian_id=guardian_id,
            label=key.label,
            year=key.year,
            event_id=key.event_id,
        )
        status_projector.write_registration_status(entry, registration, RegistrationStatus.PENDING.value)
        session.add_all([entry, registration])
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            logger.info(f"Concurrent registration for {key}; reusing the existing row")
            existing = await ensure_unique(session, key)
            if existing is None:
                raise
            entry, registration = await _reuse(session, kind, key, existing, package_type, level_of_competition)
        else:
            logger.info(f"Created {kind} registration {registration.id} for {key}")

    await recompute_guardian_payment_complete(session, registration.guardian_id)
    await session.commit()
    return entry, registration


async def register_player_for_season(
    session: AsyncSession,
    player_id: int,
    season: str,
    year: int,
    guardian_id: int,
    is_admin: bool = False,
    tryout_id: Optional[str] = None,
    package_type: Optional[str] = None,
) -> Tuple[SeasonRegistration, Registration]:
    """
    Register a player for a season.

    Args:
        session: Database session
        player_id: Player to register
        season: Season label (Spring, Summer, Fall, Winter)
        year: Season year
        guardian_id: Requesting guardian
        is_admin: Admins may register any player
        tryout_id: Explicit tryout id; derived from season and year when omitted
        package_type: Optional package chosen at registration

    Returns:
        Tuple of (SeasonRegistration, Registration)

    Raises:
        NotFound, Forbidden, InvalidRequest, DuplicateRegistration
    """
    player = await session.get(Player, player_id)
    if player is None:
        raise NotFound(f"Player {player_id} not found")
    _check_owner(player.guardian_id, guardian_id, is_admin, "player")

    label = normalize_season_label(season)
    validate_year(year)
    key = reserve(SubjectType.PLAYER.value, player.id, label, year, tryout_id)
    return await _register(
        session,
        RegistrationKind.SEASON.value,
        key,
        guardian_id=player.guardian_id,
        package_type=package_type,
    )


async def register_team_for_tournament(
    session: AsyncSession,
    team_id: int,
    tournament: str,
    year: int,
    guardian_id: int,
    is_admin: bool = False,
    tournament_id: Optional[str] = None,
    level_of_competition: Optional[str] = None,
) -> Tuple[TournamentRegistration, Registration]:
    """Register a team for a tournament. Same rules as season registration."""
    team = await session.get(Team, team_id)
    if team is None:
        raise NotFound(f"Team {team_id} not found")
    _check_owner(team.guardian_id, guardian_id, is_admin, "team")

    validate_year(year)
    level = level_of_competition or team.level_of_competition or DEFAULT_LEVEL_OF_COMPETITION
    if level not in LEVELS_OF_COMPETITION:
        raise InvalidRequest(f"Level of competition must be one of: {', '.join(LEVELS_OF_COMPETITION)}")
    key = reserve(SubjectType.TEAM.value, team.id, tournament, year, tournament_id)
    return await _register(
        session,
        RegistrationKind.TOURNAMENT.value,
        key,
        guardian_id=team.guardian_id,
        level_of_competition=level,
    )


async def get_player(session: AsyncSession, player_id: int) -> Player:
    player = await session.get(Player, player_id)
    if player is None:
        raise NotFound(f"Player {player_id} not found")
    return player


async def list_guardian_registrations(session: AsyncSession, guardian_id: int) -> List[Registration]:
    """All registrations a guardian is responsible for, oldest first."""
    result = await session.execute(
        select(Registration)
        .where(Registration.guardian_id == guardian_id)
        .order_by(Registration.id)
    )
    return list(result.scalars().all())


async def list_player_seasons(session: AsyncSession, player_id: int) -> List[SeasonRegistration]:
    result = await session.execute(
        select(SeasonRegistration)
        .where(SeasonRegistration.player_id == player_id)
        .order_by(SeasonRegistration.registration_date, SeasonRegistration.id)
    )
    return list(result.scalars().all())


async def get_current_season(session: AsyncSession, player_id: int) -> Optional[SeasonRegistration]:
    """The player's most recently registered season entry (derived, never stored)."""
    return status_projector.latest_entry(await list_player_seasons(session, player_id))


async def get_current_tournament(session: AsyncSession, team_id: int) -> Optional[TournamentRegistration]:
    """The team's most recently registered tournament entry."""
    result = await session.execute(
        select(TournamentRegistration).where(TournamentRegistration.team_id == team_id)
    )
    return status_projector.latest_entry(list(result.scalars().all()))
