"""
Tests for the registration identity manager.

Verifies that:
- every registration is written as an entry and a Registration row together
- at most one registration exists per identity key, even under concurrency
- paid/refunded registrations cannot be registered again
"""

import asyncio

import pytest
from sqlalchemy import func, select

from registrar.database.models import Guardian, Registration, SeasonRegistration, TournamentRegistration
from registrar.services import registration_service
from registrar.services.errors import DuplicateRegistration, Forbidden, InvalidRequest, NotFound
from registrar.tests.factories import create_guardian
from registrar.utils.datetime_utils import utcnow

YEAR = utcnow().year


async def _count(session, model):
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar()


class TestReserve:
    def test_derives_event_id_from_label_and_year(self):
        key = registration_service.reserve("player", 3, "Fall", 2025)
        assert key.event_id == "fall-2025"
        assert key == registration_service.reserve("player", 3, "Fall", 2025)

    def test_explicit_id_wins(self):
        key = registration_service.reserve("team", 9, "Spring Shootout", 2025, "tourn-77")
        assert key.event_id == "tourn-77"

    def test_blank_label_rejected(self):
        with pytest.raises(InvalidRequest):
            registration_service.reserve("player", 3, "  ", 2025)


class TestRegisterPlayerForSeason:
    @pytest.mark.asyncio
    async def test_creates_entry_and_registration(self, db_session, family):
        player_id = family.player_ids[0]
        entry, registration = await registration_service.register_player_for_season(
            db_session, player_id, "fall", YEAR, family.guardian_id, package_type="full-season"
        )

        assert entry.season == "Fall"
        assert entry.tryout_id == f"fall-{YEAR}"
        assert entry.payment_status == "pending"
        assert entry.payment_complete is False
        assert entry.package_type == "full-season"

        assert registration.kind == "season"
        assert registration.subject_type == "player"
        assert registration.subject_id == player_id
        assert registration.guardian_id == family.guardian_id
        assert registration.event_id == entry.tryout_id
        assert registration.payment_status == "pending"

        guardian = await db_session.get(Guardian, family.guardian_id)
        assert guardian.payment_complete is False

    @pytest.mark.asyncio
    async def test_registering_twice_reuses_pending_registration(self, db_session, family):
        player_id = family.player_ids[0]
        guardian_id = family.guardian_id
        _, first = await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id
        )
        _, second = await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id
        )

        assert first.id == second.id
        assert await _count(db_session, Registration) == 1
        assert await _count(db_session, SeasonRegistration) == 1

    @pytest.mark.asyncio
    async def test_paid_registration_is_a_duplicate(self, db_session, family):
        player_id = family.player_ids[0]
        guardian_id = family.guardian_id
        entry, registration = await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id
        )
        entry.payment_status = registration.payment_status = "paid"
        await db_session.commit()

        with pytest.raises(DuplicateRegistration):
            await registration_service.register_player_for_season(
                db_session, player_id, "Fall", YEAR, guardian_id
            )

    @pytest.mark.asyncio
    async def test_failed_registration_goes_back_to_pending(self, db_session, family):
        player_id = family.player_ids[0]
        guardian_id = family.guardian_id
        entry, registration = await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id
        )
        entry.payment_status = registration.payment_status = "failed"
        await db_session.commit()

        entry, again = await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id
        )
        assert again.id == registration.id
        assert again.payment_status == "pending"
        assert entry.payment_status == "pending"

    @pytest.mark.asyncio
    async def test_different_tryout_ids_are_different_registrations(self, db_session, family):
        player_id = family.player_ids[0]
        guardian_id = family.guardian_id
        await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id, tryout_id="north"
        )
        await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id, tryout_id="south"
        )
        assert await _count(db_session, Registration) == 2

    @pytest.mark.asyncio
    async def test_other_guardian_is_forbidden(self, db_session, family):
        stranger = await create_guardian(db_session, email="stranger@example.com")
        await db_session.commit()
        with pytest.raises(Forbidden):
            await registration_service.register_player_for_season(
                db_session, family.player_ids[0], "Fall", YEAR, stranger.id
            )

    @pytest.mark.asyncio
    async def test_admin_may_register_any_player(self, db_session, family):
        admin = await create_guardian(db_session, email="admin@example.com", role="admin")
        await db_session.commit()
        _, registration = await registration_service.register_player_for_season(
            db_session, family.player_ids[0], "Fall", YEAR, admin.id, is_admin=True
        )
        # Owned by the player's guardian, not the admin
        assert registration.guardian_id == family.guardian_id

    @pytest.mark.asyncio
    async def test_validation(self, db_session, family):
        player_id = family.player_ids[0]
        guardian_id = family.guardian_id
        with pytest.raises(InvalidRequest):
            await registration_service.register_player_for_season(db_session, player_id, "Monsoon", YEAR, guardian_id)
        with pytest.raises(InvalidRequest):
            await registration_service.register_player_for_season(db_session, player_id, "Fall", 2019, guardian_id)
        with pytest.raises(InvalidRequest):
            await registration_service.register_player_for_season(
                db_session, player_id, "Fall", YEAR + 3, guardian_id
            )
        with pytest.raises(NotFound):
            await registration_service.register_player_for_season(db_session, 9999, "Fall", YEAR, guardian_id)

    @pytest.mark.asyncio
    async def test_concurrent_registrations_create_one_row(self, session_factory, family):
        player_id = family.player_ids[0]
        guardian_id = family.guardian_id

        async def register():
            async with session_factory() as session:
                _, registration = await registration_service.register_player_for_season(
                    session, player_id, "Summer", YEAR, guardian_id
                )
                return registration.id

        ids = await asyncio.gather(*(register() for _ in range(4)))

        assert len(set(ids)) == 1
        async with session_factory() as session:
            assert await _count(session, Registration) == 1
            assert await _count(session, SeasonRegistration) == 1


class TestRegisterTeamForTournament:
    @pytest.mark.asyncio
    async def test_creates_entry_and_registration(self, db_session, family):
        team_id = family.team_id
        entry, registration = await registration_service.register_team_for_tournament(
            db_session, team_id, "Spring Shootout", YEAR, family.guardian_id, level_of_competition="Silver"
        )

        assert isinstance(entry, TournamentRegistration)
        assert entry.tournament_id == f"spring-shootout-{YEAR}"
        assert entry.level_of_competition == "Silver"
        assert registration.kind == "tournament"
        assert registration.subject_type == "team"
        assert registration.event_id == entry.tournament_id

    @pytest.mark.asyncio
    async def test_level_defaults_to_team_level(self, db_session, family):
        entry, _ = await registration_service.register_team_for_tournament(
            db_session, family.team_id, "Summer Slam", YEAR, family.guardian_id
        )
        assert entry.level_of_competition == "Gold"

    @pytest.mark.asyncio
    async def test_invalid_level_rejected(self, db_session, family):
        with pytest.raises(InvalidRequest):
            await registration_service.register_team_for_tournament(
                db_session, family.team_id, "Summer Slam", YEAR, family.guardian_id,
                level_of_competition="Platinum",
            )

    @pytest.mark.asyncio
    async def test_season_and_tournament_with_same_label_are_separate(self, db_session, family):
        guardian_id = family.guardian_id
        await registration_service.register_player_for_season(db_session, family.player_ids[0], "Fall", YEAR, guardian_id)
        await registration_service.register_team_for_tournament(
            db_session, family.team_id, "Fall", YEAR, guardian_id
        )
        assert await _count(db_session, Registration) == 2


class TestQueries:
    @pytest.mark.asyncio
    async def test_current_season_is_latest_registration(self, db_session, family):
        player_id = family.player_ids[0]
        guardian_id = family.guardian_id
        await registration_service.register_player_for_season(db_session, player_id, "Spring", YEAR, guardian_id)
        entry, _ = await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, guardian_id
        )

        seasons = await registration_service.list_player_seasons(db_session, player_id)
        current = await registration_service.get_current_season(db_session, player_id)

        assert [s.season for s in seasons] == ["Spring", "Fall"]
        assert current.id == entry.id

    @pytest.mark.asyncio
    async def test_player_without_registrations_has_no_current_season(self, db_session, family):
        assert await registration_service.get_current_season(db_session, family.player_ids[1]) is None

    @pytest.mark.asyncio
    async def test_list_guardian_registrations(self, db_session, family):
        guardian_id = family.guardian_id
        for player_id in family.player_ids:
            await registration_service.register_player_for_season(db_session, player_id, "Fall", YEAR, guardian_id)
        await registration_service.register_team_for_tournament(
            db_session, family.team_id, "Summer Slam", YEAR, guardian_id
        )

        registrations = await registration_service.list_guardian_registrations(db_session, guardian_id)
        assert [r.kind for r in registrations] == ["season", "season", "tournament"]

    @pytest.mark.asyncio
    async def test_current_tournament(self, db_session, family):
        guardian_id = family.guardian_id
        await registration_service.register_team_for_tournament(
            db_session, family.team_id, "Spring Shootout", YEAR, guardian_id
        )
        entry, _ = await registration_service.register_team_for_tournament(
            db_session, family.team_id, "Summer Slam", YEAR, guardian_id
        )

        current = await registration_service.get_current_tournament(db_session, family.team_id)
        assert current.id == entry.id


class TestEnsureUnique:
    @pytest.mark.asyncio
    async def test_unknown_key_may_proceed(self, db_session, family):
        key = registration_service.reserve("player", family.player_ids[0], "Fall", YEAR)
        assert await registration_service.ensure_unique(db_session, key) is None

    @pytest.mark.asyncio
    async def test_pending_is_reused_and_refunded_is_a_duplicate(self, db_session, family):
        player_id = family.player_ids[0]
        entry, registration = await registration_service.register_player_for_season(
            db_session, player_id, "Fall", YEAR, family.guardian_id
        )
        key = registration_service.reserve("player", player_id, "Fall", YEAR)

        existing = await registration_service.ensure_unique(db_session, key)
        assert existing.id == registration.id

        entry.payment_status = registration.payment_status = "refunded"
        await db_session.commit()
        with pytest.raises(DuplicateRegistration):
            await registration_service.ensure_unique(db_session, key)
