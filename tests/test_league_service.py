"""
Tests for league creation, settings and membership.
"""

import pytest

from league_engine.database.models import LeagueFormat, MemberStatus
from league_engine.models.schemas import Actor, ActorRole
from league_engine.services import league_service, schedule_service
from league_engine.services.errors import NotFoundError, StateConflictError, ValidationError


@pytest.mark.asyncio
async def test_create_league_defaults(db_session, organizer):
    league = await league_service.create_league(db_session, organizer, "Summer Ladder", LeagueFormat.SWISS)

    assert league.organizer_ids == [organizer.id]
    assert league.points_to_win == 11
    assert league.win_by == 2
    assert league.required_confirmations == 1
    assert league.auto_finalize_hours == 24
    assert league.tiebreakers == []


@pytest.mark.asyncio
async def test_create_league_extra_organizers_and_format_value(db_session, organizer):
    league = await league_service.create_league(
        db_session, organizer, "Boxes", "rotating_box", organizer_ids=["org-2", organizer.id], box_size=4
    )
    assert league.format == LeagueFormat.ROTATING_BOX
    assert league.organizer_ids == [organizer.id, "org-2"]
    assert league.box_size == 4


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "settings",
    [
        {"win_by": 3},
        {"best_of": 2},
        {"box_size": 7},
        {"promotion_count": 3, "relegation_count": 3, "box_size": 5},
        {"tiebreakers": ["wins", "coin_flip"]},
        {"required_confirmations": -1},
        {"colour": "blue"},
        {"absence_policy": "sometimes"},
        {"challenge_range": 0},
    ],
)
async def test_create_league_rejects_bad_settings(db_session, organizer, settings):
    with pytest.raises(ValidationError):
        await league_service.create_league(db_session, organizer, "Bad", LeagueFormat.ROUND_ROBIN, **settings)


@pytest.mark.asyncio
async def test_participants_cannot_create_leagues(db_session):
    with pytest.raises(ValidationError):
        await league_service.create_league(db_session, Actor(id="p1"), "Mine", LeagueFormat.ROUND_ROBIN)


@pytest.mark.asyncio
async def test_unknown_format(db_session, organizer):
    with pytest.raises(ValidationError, match="Unknown league format"):
        await league_service.create_league(db_session, organizer, "X", "knockout")


@pytest.mark.asyncio
async def test_settings_lock_once_matches_exist(db_session, make_league, add_members, organizer, recalc_requests):
    league = await make_league()
    await add_members(league, 4)

    league = await league_service.update_league_settings(db_session, league.id, organizer, points_to_win=15)
    assert league.points_to_win == 15

    await schedule_service.generate_schedule(db_session, league.id, organizer)

    with pytest.raises(StateConflictError, match="points_to_win"):
        await league_service.update_league_settings(db_session, league.id, organizer, points_to_win=21)

    league = await league_service.update_league_settings(
        db_session, league.id, organizer, auto_confirm=True, tiebreakers=["wins", "point_diff"]
    )
    assert league.auto_confirm is True
    assert league.tiebreakers == ["wins", "point_diff"]
    assert recalc_requests == [league.id]


@pytest.mark.asyncio
async def test_unchanged_locked_setting_is_allowed(db_session, make_league, add_members, organizer):
    league = await make_league()
    await add_members(league, 2)
    await schedule_service.generate_schedule(db_session, league.id, organizer)

    league = await league_service.update_league_settings(db_session, league.id, organizer, points_to_win=11)
    assert league.points_to_win == 11


@pytest.mark.asyncio
async def test_settings_need_organizer(db_session, make_league):
    league = await make_league()
    with pytest.raises(ValidationError):
        await league_service.update_league_settings(
            db_session, league.id, Actor(id="p1"), auto_confirm=True
        )


@pytest.mark.asyncio
async def test_missing_league(db_session, organizer):
    with pytest.raises(NotFoundError):
        await league_service.update_league_settings(db_session, 404, organizer, auto_confirm=True)


# ============================================================================
# Members
# ============================================================================


@pytest.mark.asyncio
async def test_self_registration(db_session, make_league):
    league = await make_league()
    member = await league_service.add_member(db_session, league.id, Actor(id="p9"), "Nine", ["p9"])
    assert member.status == MemberStatus.ACTIVE

    with pytest.raises(ValidationError, match="themselves"):
        await league_service.add_member(db_session, league.id, Actor(id="p9"), "Other", ["p10"])


@pytest.mark.asyncio
async def test_player_cannot_join_twice(db_session, make_league, add_members, organizer):
    league = await make_league()
    await add_members(league, 2)
    with pytest.raises(ValidationError, match="already registered"):
        await league_service.add_member(db_session, league.id, organizer, "Again", ["p1", "p7"])


@pytest.mark.asyncio
async def test_member_roster_size(db_session, make_league, organizer):
    league = await make_league()
    with pytest.raises(ValidationError):
        await league_service.add_member(db_session, league.id, organizer, "Crowd", ["a", "b", "c"])
    with pytest.raises(ValidationError):
        await league_service.add_member(db_session, league.id, organizer, "Nobody", [])


@pytest.mark.asyncio
async def test_withdraw_member(db_session, make_league, add_members, organizer, recalc_requests):
    league = await make_league()
    members = await add_members(league, 3)

    member = await league_service.withdraw_member(db_session, league.id, members[0].id, Actor(id="p1"))
    assert member.status == MemberStatus.WITHDRAWN
    assert member.withdrawn_at is not None
    assert recalc_requests == [league.id]

    with pytest.raises(StateConflictError):
        await league_service.withdraw_member(db_session, league.id, members[0].id, organizer)
    with pytest.raises(ValidationError):
        await league_service.withdraw_member(db_session, league.id, members[1].id, Actor(id="p3"))

    active = await league_service.list_members(db_session, league.id)
    assert [m.id for m in active] == [members[1].id, members[2].id]
    everyone = await league_service.list_members(db_session, league.id, include_withdrawn=True)
    assert len(everyone) == 3


@pytest.mark.asyncio
async def test_member_of_other_league_not_found(db_session, make_league, add_members):
    first = await make_league(name="First")
    second = await make_league(name="Second")
    members = await add_members(first, 1)
    with pytest.raises(NotFoundError):
        await league_service.get_member(db_session, second.id, members[0].id)


@pytest.mark.asyncio
async def test_standings_order(db_session, make_league, add_members):
    league = await make_league()
    members = await add_members(league, 3)
    members[2].rank = 1
    members[0].rank = 2
    await db_session.commit()

    standings = await league_service.get_standings(db_session, league.id)
    assert [m.id for m in standings] == [members[2].id, members[0].id, members[1].id]


def test_is_organizer_needs_role_and_listing():
    league = type("L", (), {"is_organizer": lambda self, identity: identity == "org-1"})()
    assert league_service.is_organizer(league, Actor(id="org-1", role=ActorRole.ORGANIZER))
    assert not league_service.is_organizer(league, Actor(id="org-1"))
    assert not league_service.is_organizer(league, Actor(id="org-2", role=ActorRole.ORGANIZER))
