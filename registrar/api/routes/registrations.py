"""Season and tournament registration route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from registrar.api.auth_dependencies import ensure_guardian_access, get_current_identity
from registrar.database.db import get_db_session
from registrar.models.schemas import (
    PlayerSeasonsResponse,
    RegistrationResponse,
    SeasonEntryResponse,
    SeasonRegistrationCreate,
    SeasonRegistrationResponse,
    TournamentEntryResponse,
    TournamentRegistrationCreate,
    TournamentRegistrationResponse,
)
from registrar.services import registration_service
from registrar.services.errors import RegistrarError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/api/players/{player_id}/seasons",
    response_model=SeasonRegistrationResponse,
    status_code=201,
)
async def register_player_for_season(
    player_id: int,
    payload: SeasonRegistrationCreate,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """Register a player for a season. Re-registering a pending/failed entry reuses it."""
    try:
        entry, registration = await registration_service.register_player_for_season(
            session,
            player_id=player_id,
            season=payload.season,
            year=payload.year,
            guardian_id=identity["guardian_id"],
            is_admin=identity["is_admin"],
            tryout_id=payload.tryout_id,
            package_type=payload.package_type,
        )
        return SeasonRegistrationResponse(
            entry=SeasonEntryResponse.model_validate(entry),
            registration=RegistrationResponse.model_validate(registration),
        )
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error registering player {player_id} for season: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating registration")


@router.get("/api/players/{player_id}/seasons", response_model=PlayerSeasonsResponse)
async def get_player_seasons(
    player_id: int,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """List a player's season entries and the current (most recently registered) one."""
    try:
        player = await registration_service.get_player(session, player_id)
        ensure_guardian_access(identity, player.guardian_id)
        seasons = await registration_service.list_player_seasons(session, player_id)
        current = await registration_service.get_current_season(session, player_id)
        return PlayerSeasonsResponse(
            player_id=player_id,
            seasons=[SeasonEntryResponse.model_validate(s) for s in seasons],
            current_season=SeasonEntryResponse.model_validate(current) if current else None,
        )
    except (RegistrarError, HTTPException):
        raise
    except Exception as e:
        logger.error(f"Error getting seasons for player {player_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error getting player seasons")


@router.post(
    "/api/teams/{team_id}/tournaments",
    response_model=TournamentRegistrationResponse,
    status_code=201,
)
async def register_team_for_tournament(
    team_id: int,
    payload: TournamentRegistrationCreate,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """Register a team for a tournament."""
    try:
        entry, registration = await registration_service.register_team_for_tournament(
            session,
            team_id=team_id,
            tournament=payload.tournament,
            year=payload.year,
            guardian_id=identity["guardian_id"],
            is_admin=identity["is_admin"],
            tournament_id=payload.tournament_id,
            level_of_competition=payload.level_of_competition,
        )
        return TournamentRegistrationResponse(
            entry=TournamentEntryResponse.model_validate(entry),
            registration=RegistrationResponse.model_validate(registration),
        )
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error registering team {team_id} for tournament: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating registration")


@router.get(
    "/api/guardians/{guardian_id}/registrations",
    response_model=List[RegistrationResponse],
)
async def list_guardian_registrations(
    guardian_id: int,
    identity: dict = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
):
    """List every registration a guardian is responsible for."""
    ensure_guardian_access(identity, guardian_id)
    try:
        registrations = await registration_service.list_guardian_registrations(session, guardian_id)
        return [RegistrationResponse.model_validate(r) for r in registrations]
    except RegistrarError:
        raise
    except Exception as e:
        logger.error(f"Error listing registrations for guardian {guardian_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error listing registrations")
