"""
Tests for the box league week lifecycle and promotion/relegation.
"""

import warnings
from types import SimpleNamespace

import pytest
from sqlalchemy import delete, select

from league_engine.database.models import (
    BoxLeagueWeek,
    BoxWeekState,
    LeagueFormat,
    Match,
    ScoreState,
)
from league_engine.models.schemas import Actor
from league_engine.services import box_week_service, league_service, scoring_service
from league_engine.services.box_week_service import (
    apply_absence_policy,
    build_next_assignments,
    compute_movements,
    standings_assignments,
    validate_assignments,
)
from league_engine.services.calculation_service import recalculate_league_standings
from league_engine.services.errors import (
    NotFoundError,
    RecoveryWarning,
    StateConflictError,
    ValidationError,
)


def box(number, *member_ids):
    return {"box_number": number, "standings": [{"member_id": m, "display_name": f"M{m}"} for m in member_ids]}


# ============================================================================
# Pure helpers
# ============================================================================


def test_movements_promote_and_relegate_one():
    snapshot = [box(1, 1, 2, 3, 4), box(2, 5, 6, 7, 8), box(3, 9, 10, 11, 12)]
    next_boxes, movements = compute_movements(snapshot, promotion_count=1, relegation_count=1)

    assert next_boxes == [
        [1, 2, 3, 5],
        [4, 6, 7, 9],
        [8, 10, 11, 12],
    ]
    by_member = {m["member_id"]: m for m in movements}
    assert by_member[4]["movement"] == "relegated"
    assert by_member[4]["to_box"] == 2
    assert by_member[5]["movement"] == "promoted"
    assert by_member[5]["to_box"] == 1
    assert by_member[1]["movement"] == "stayed"
    assert by_member[12]["movement"] == "stayed"
    assert by_member[8]["from_position"] == 4
    assert len(movements) == 12


def test_movements_two_up_two_down():
    snapshot = [box(1, 1, 2, 3, 4, 5), box(2, 6, 7, 8, 9, 10)]
    next_boxes, _ = compute_movements(snapshot, promotion_count=2, relegation_count=2)
    assert next_boxes == [[1, 2, 3, 6, 7], [4, 5, 8, 9, 10]]


def test_frozen_box_blocks_its_boundaries():
    snapshot = [box(1, 1, 2, 3), box(2, 4, 5, 6), box(3, 7, 8, 9)]
    next_boxes, movements = compute_movements(snapshot, 1, 1, frozen_boxes=[2])

    assert next_boxes == [[1, 2, 3], [4, 5, 6], [7, 8, 9]]
    assert {m["movement"] for m in movements} == {"stayed"}


def test_single_box_never_moves():
    next_boxes, movements = compute_movements([box(1, 1, 2, 3, 4)], 1, 1)
    assert next_boxes == [[1, 2, 3, 4]]
    assert all(m["to_box"] == 1 for m in movements)


def test_next_assignments_drop_withdrawn_and_add_newcomers():
    boxes = build_next_assignments([[1, 2, 3, 5], [4, 6, 7, 8]], active_ids=[1, 2, 3, 4, 5, 6, 7, 8, 9], box_size=4)
    assert boxes == [
        {"box_number": 1, "member_ids": [1, 2, 3, 5]},
        {"box_number": 2, "member_ids": [4, 6, 7, 8, 9]},
    ]

    boxes = build_next_assignments([[1, 2, 3, 5], [4, 6, 7, 8]], active_ids=[1, 2, 3, 5, 6, 7, 8], box_size=4)
    assert boxes == [
        {"box_number": 1, "member_ids": [1, 2, 3, 5]},
        {"box_number": 2, "member_ids": [6, 7, 8]},
    ]


def test_next_assignments_repartition_when_box_too_small():
    boxes = build_next_assignments([[1, 2, 3, 4], [5, 6, 7, 8]], active_ids=[1, 2, 3, 4, 5, 6], box_size=4)
    assert boxes == [{"box_number": 1, "member_ids": [1, 2, 3, 4, 5, 6]}]


@pytest.mark.parametrize(
    "assignments,message",
    [
        ([], "at least one box"),
        ([{"box_number": 2, "member_ids": [1, 2, 3]}], "numbered"),
        ([{"box_number": 1, "member_ids": [1, 2]}], "has 2 members"),
        ([{"box_number": 1, "member_ids": [1, 2, 3]}, {"box_number": 2, "member_ids": [3, 4, 5]}], "more than one box"),
        ([{"box_number": 1, "member_ids": [1, 2, 99]}], "not an active member"),
    ],
)
def test_validate_assignments(assignments, message):
    with pytest.raises(ValidationError, match=message):
        validate_assignments(assignments, active_ids=[1, 2, 3, 4, 5])


# ============================================================================
# Lifecycle
# ============================================================================


@pytest.fixture
def box_league(db_session, make_league, add_members):
    """Rotating box league of eight singles members in two boxes of four."""

    async def _build(**settings):
        options = {"box_size": 4, "total_weeks": 2, "promotion_count": 1, "relegation_count": 1}
        options.update(settings)
        league = await make_league(format=LeagueFormat.ROTATING_BOX, **options)
        members = await add_members(league, 8)
        return league, [m.id for m in members]

    return _build


async def week_matches(db_session, league_id, week_number):
    result = await db_session.execute(
        select(Match)
        .where(Match.league_id == league_id, Match.week_number == week_number)
        .order_by(Match.box_number, Match.round_number)
    )
    return list(result.scalars().all())


async def play_out(db_session, organizer, league_id, week_number):
    """Organizer records an 11-5 side A win for every unfinished match."""
    for match in await week_matches(db_session, league_id, week_number):
        if match.score_state != ScoreState.OFFICIAL:
            await scoring_service.finalize_score(db_session, match.id, organizer, scores=[[11, 5]])


async def load_week(db_session, league_id, week_number):
    result = await db_session.execute(
        select(BoxLeagueWeek).where(
            BoxLeagueWeek.league_id == league_id, BoxLeagueWeek.week_number == week_number
        )
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_seed_first_week(db_session, box_league, organizer):
    league, ids = await box_league()

    week = await box_week_service.seed_first_week(db_session, league.id, organizer)
    assert week["state"] == BoxWeekState.DRAFT
    assert week["box_assignments"] == [
        {"box_number": 1, "member_ids": ids[:4]},
        {"box_number": 2, "member_ids": ids[4:]},
    ]
    assert week["match_ids"] == []

    with pytest.raises(StateConflictError):
        await box_week_service.seed_first_week(db_session, league.id, organizer)
    with pytest.raises(ValidationError, match="Next week"):
        await box_week_service.create_draft(
            db_session, league.id, 3, [{"box_number": 1, "member_ids": ids[:4]}], organizer
        )


@pytest.mark.asyncio
async def test_weeks_only_for_box_leagues(db_session, make_league, add_members, organizer):
    league = await make_league()
    await add_members(league, 4)
    with pytest.raises(ValidationError, match="not a box league"):
        await box_week_service.seed_first_week(db_session, league.id, organizer)


@pytest.mark.asyncio
async def test_update_draft_boxes(db_session, box_league, organizer):
    league, ids = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)

    swapped = [
        {"box_number": 1, "member_ids": ids[:3] + [ids[4]]},
        {"box_number": 2, "member_ids": [ids[3]] + ids[5:]},
    ]
    week = await box_week_service.update_box_assignments(db_session, league.id, 1, organizer, swapped)
    assert week["box_assignments"] == swapped

    player = Actor(id="p1")
    with pytest.raises(ValidationError):
        await box_week_service.update_box_assignments(db_session, league.id, 1, player, swapped)


@pytest.mark.asyncio
async def test_week_lifecycle(db_session, box_league, organizer, recalc_requests):
    league, ids = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)

    week = await box_week_service.activate_week(db_session, league.id, 1, organizer)
    assert week["state"] == BoxWeekState.ACTIVE
    # Rotation of four: three rounds per box, two boxes
    assert week["total_matches"] == 6
    assert len(week["match_ids"]) == 6
    matches = await week_matches(db_session, league.id, 1)
    assert {m.box_number for m in matches} == {1, 2}
    assert all(len(m.side_a_player_ids) == 2 for m in matches)

    with pytest.raises(StateConflictError):
        await box_week_service.activate_week(db_session, league.id, 1, organizer)
    with pytest.raises(StateConflictError, match="start closing"):
        await box_week_service.finalize_week(db_session, league.id, 1, organizer)
    with pytest.raises(StateConflictError):
        await box_week_service.update_box_assignments(
            db_session, league.id, 1, organizer, week["box_assignments"]
        )

    # One proposal left unconfirmed
    pending = matches[0]
    await scoring_service.propose_score(db_session, pending.id, [[11, 9]], Actor(id=pending.side_a_player_ids[0]))

    week = await box_week_service.start_closing(db_session, league.id, 1, organizer)
    assert week["state"] == BoxWeekState.CLOSING
    assert week["pending_matches"] == 1
    assert week["disputed_matches"] == 0

    with pytest.raises(StateConflictError, match="pending confirmation or disputed"):
        await box_week_service.finalize_week(db_session, league.id, 1, organizer)

    await play_out(db_session, organizer, league.id, 1)
    recalc_requests.clear()

    week = await box_week_service.finalize_week(db_session, league.id, 1, organizer)
    assert week["state"] == BoxWeekState.FINALIZED
    assert week["next_week_number"] == 2
    assert recalc_requests == [league.id]

    # Side A won every match: the first listed member tops each box, the rest tie
    box_one = week["standings_snapshot"][0]["standings"]
    assert box_one[0]["member_id"] == ids[0]
    assert box_one[0]["wins"] == 3
    moves = {m["member_id"]: m["movement"] for m in week["movements"]}
    assert moves[ids[3]] == "relegated"
    assert moves[ids[4]] == "promoted"

    next_week = await box_week_service.get_week(db_session, league.id, 2)
    assert next_week["state"] == BoxWeekState.DRAFT
    assert next_week["box_assignments"] == [
        {"box_number": 1, "member_ids": [ids[0], ids[1], ids[2], ids[4]]},
        {"box_number": 2, "member_ids": [ids[3], ids[5], ids[6], ids[7]]},
    ]

    snapshot = week["standings_snapshot"]
    with pytest.raises(StateConflictError, match="already finalized"):
        await box_week_service.finalize_week(db_session, league.id, 1, organizer)
    again = await box_week_service.get_week(db_session, league.id, 1)
    assert again["standings_snapshot"] == snapshot

    week_two = await box_week_service.activate_week(db_session, league.id, 2, organizer)
    assert week_two["total_matches"] == 6


@pytest.mark.asyncio
async def test_last_week_does_not_seed_another(db_session, box_league, organizer):
    league, _ = await box_league(total_weeks=1)
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.activate_week(db_session, league.id, 1, organizer)
    await box_week_service.start_closing(db_session, league.id, 1, organizer)
    await play_out(db_session, organizer, league.id, 1)

    week = await box_week_service.finalize_week(db_session, league.id, 1, organizer)
    assert week["next_week_number"] is None
    with pytest.raises(NotFoundError):
        await box_week_service.get_week(db_session, league.id, 2)


@pytest.mark.asyncio
async def test_activation_needs_previous_week_finalized(db_session, box_league, organizer):
    league, ids = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.create_draft(
        db_session,
        league.id,
        2,
        [{"box_number": 1, "member_ids": ids[:4]}, {"box_number": 2, "member_ids": ids[4:]}],
        organizer,
    )

    with pytest.raises(StateConflictError, match="finalized first"):
        await box_week_service.activate_week(db_session, league.id, 2, organizer)

    await box_week_service.activate_week(db_session, league.id, 1, organizer)
    with pytest.raises(StateConflictError, match="still open"):
        await box_week_service.activate_week(db_session, league.id, 2, organizer)


@pytest.mark.asyncio
async def test_activation_rejects_withdrawn_members(db_session, box_league, organizer):
    league, ids = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await league_service.withdraw_member(db_session, league.id, ids[0], organizer)

    with pytest.raises(ValidationError, match="not an active member"):
        await box_week_service.activate_week(db_session, league.id, 1, organizer)


@pytest.mark.asyncio
async def test_deactivate_deletes_matches(db_session, box_league, organizer):
    league, _ = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.activate_week(db_session, league.id, 1, organizer)

    week = await box_week_service.deactivate_week(db_session, league.id, 1, organizer)
    assert week["state"] == BoxWeekState.DRAFT
    assert week["deleted_matches"] == 6
    assert week["match_ids"] == []
    assert await week_matches(db_session, league.id, 1) == []

    # Activating again builds a fresh set
    week = await box_week_service.activate_week(db_session, league.id, 1, organizer)
    assert week["total_matches"] == 6


@pytest.mark.asyncio
async def test_deactivate_refused_with_official_results(db_session, box_league, organizer):
    league, _ = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.activate_week(db_session, league.id, 1, organizer)
    match = (await week_matches(db_session, league.id, 1))[0]
    await scoring_service.finalize_score(db_session, match.id, organizer, scores=[[11, 4]])

    with pytest.raises(StateConflictError, match="official results"):
        await box_week_service.deactivate_week(db_session, league.id, 1, organizer)


@pytest.mark.asyncio
async def test_recalculate_draft_from_finalized_week(db_session, box_league, organizer):
    league, ids = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)

    with pytest.raises(ValidationError, match="seeding"):
        await box_week_service.recalculate_draft(db_session, league.id, 1, organizer)

    await box_week_service.activate_week(db_session, league.id, 1, organizer)
    await box_week_service.start_closing(db_session, league.id, 1, organizer)
    await play_out(db_session, organizer, league.id, 1)
    await box_week_service.finalize_week(db_session, league.id, 1, organizer)

    await league_service.withdraw_member(db_session, league.id, ids[7], organizer)
    week = await box_week_service.recalculate_draft(db_session, league.id, 2, organizer)

    assert week["box_assignments"] == [
        {"box_number": 1, "member_ids": [ids[0], ids[1], ids[2], ids[4]]},
        {"box_number": 2, "member_ids": [ids[3], ids[5], ids[6]]},
    ]
    assert len(week["movements"]) == 8


# ============================================================================
# Freezing
# ============================================================================


@pytest.mark.asyncio
async def test_frozen_box_keeps_everyone_in_place(db_session, box_league, organizer):
    league, ids = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.activate_week(db_session, league.id, 1, organizer)

    week = await box_week_service.freeze_box_movement(db_session, league.id, 1, organizer, box_number=2)
    assert week["frozen_boxes"] == [2]
    with pytest.raises(ValidationError, match="no box 5"):
        await box_week_service.freeze_box_movement(db_session, league.id, 1, organizer, box_number=5)

    await box_week_service.start_closing(db_session, league.id, 1, organizer)
    await play_out(db_session, organizer, league.id, 1)
    await box_week_service.finalize_week(db_session, league.id, 1, organizer)

    next_week = await box_week_service.get_week(db_session, league.id, 2)
    assert next_week["box_assignments"] == [
        {"box_number": 1, "member_ids": ids[:4]},
        {"box_number": 2, "member_ids": ids[4:]},
    ]

    with pytest.raises(StateConflictError):
        await box_week_service.freeze_box_movement(db_session, league.id, 1, organizer, box_number=1)


# ============================================================================
# Recovery on read
# ============================================================================


@pytest.mark.asyncio
async def test_get_week_repairs_missing_match_list(db_session, box_league, organizer):
    league, _ = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.activate_week(db_session, league.id, 1, organizer)

    stored = await load_week(db_session, league.id, 1)
    stored.match_ids = []
    await db_session.commit()

    with warnings.catch_warnings():
        warnings.simplefilter("error", RecoveryWarning)
        week = await box_week_service.get_week(db_session, league.id, 1)

    assert len(week["match_ids"]) == 6
    assert week["warnings"] == []


@pytest.mark.asyncio
async def test_get_week_warns_once_when_repair_impossible(db_session, box_league, organizer):
    league, _ = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.activate_week(db_session, league.id, 1, organizer)

    await db_session.execute(delete(Match).where(Match.league_id == league.id))
    stored = await load_week(db_session, league.id, 1)
    stored.match_ids = []
    await db_session.commit()

    with pytest.warns(RecoveryWarning) as record:
        week = await box_week_service.get_week(db_session, league.id, 1)

    assert len([w for w in record if issubclass(w.category, RecoveryWarning)]) == 1
    assert week["state"] == BoxWeekState.ACTIVE
    assert len(week["warnings"]) == 1
    assert "no matches" in week["warnings"][0]


@pytest.mark.asyncio
async def test_get_week_missing(db_session, box_league):
    league, _ = await box_league()
    with pytest.raises(NotFoundError):
        await box_week_service.get_week(db_session, league.id, 1)
    assert await box_week_service.list_weeks(db_session, league.id) == []


# ============================================================================
# Absences and substitutes
# ============================================================================


def with_policy(snapshot, member_id, policy):
    for entry in snapshot:
        for row in entry["standings"]:
            if row["member_id"] == member_id:
                row["absence_policy"] = policy
    return snapshot


def test_absence_policy_stats():
    season = SimpleNamespace(
        played=4, wins=2, losses=2, league_points=6, points_for=44, points_against=36, games_won=2, games_lost=2
    )

    frozen = apply_absence_policy("freeze", season, 3)
    assert set(frozen.values()) == {0}
    assert apply_absence_policy("ghost_score", season, 3) == frozen

    assert apply_absence_policy("average_points", season, 2) == {
        "played": 0,
        "wins": 1,
        "losses": 1,
        "league_points": 3,
        "points_for": 22,
        "points_against": 18,
        "games_won": 1,
        "games_lost": 1,
    }

    rookie = SimpleNamespace(played=0, wins=0, losses=0, league_points=0, points_for=0, points_against=0,
                             games_won=0, games_lost=0)
    assert apply_absence_policy("average_points", rookie, 3) == frozen


def test_standings_assignments_restore_absent_members():
    # Member 2 left slot 1 and was covered by substitute 90, then member 4 left slot 3
    absences = [
        {"member_id": 2, "box_number": 1, "position": 1, "substitute_member_id": 90},
        {"member_id": 4, "box_number": 1, "position": 3, "substitute_member_id": None},
    ]
    boxes = [{"box_number": 1, "member_ids": [1, 90, 3]}, {"box_number": 2, "member_ids": [5, 6, 7, 8]}]

    assert standings_assignments(boxes, absences) == [
        {"box_number": 1, "member_ids": [1, 2, 3, 4]},
        {"box_number": 2, "member_ids": [5, 6, 7, 8]},
    ]


def test_frozen_absentee_keeps_their_box():
    snapshot = with_policy([box(1, 1, 2, 3, 4), box(2, 5, 6, 7, 8)], 4, "freeze")
    next_boxes, movements = compute_movements(snapshot, promotion_count=1, relegation_count=1)

    assert next_boxes == [[1, 2, 4, 5], [3, 6, 7, 8]]
    by_member = {m["member_id"]: m for m in movements}
    assert by_member[4]["movement"] == "stayed"
    assert by_member[4]["absence_policy"] == "freeze"
    assert by_member[3]["movement"] == "relegated"


def test_auto_relegated_absentee_takes_the_relegation_place():
    snapshot = with_policy([box(1, 1, 2, 3, 4), box(2, 5, 6, 7, 8)], 1, "auto_relegate")
    next_boxes, _ = compute_movements(snapshot, promotion_count=1, relegation_count=1)
    assert next_boxes == [[2, 3, 4, 5], [1, 6, 7, 8]]

    # Drops even when the league relegates no one
    snapshot = with_policy([box(1, 1, 2, 3, 4), box(2, 5, 6, 7, 8)], 2, "auto_relegate")
    next_boxes, _ = compute_movements(snapshot, promotion_count=0, relegation_count=0)
    assert next_boxes == [[1, 3, 4], [2, 5, 6, 7, 8]]

    # Nowhere to go from the last box
    snapshot = with_policy([box(1, 1, 2, 3, 4), box(2, 5, 6, 7, 8)], 8, "auto_relegate")
    next_boxes, _ = compute_movements(snapshot, promotion_count=1, relegation_count=1)
    assert next_boxes == [[1, 2, 3, 5], [4, 6, 7, 8]]


@pytest.mark.asyncio
async def test_absence_with_substitute(db_session, box_league, organizer):
    league, ids = await box_league()
    await box_week_service.seed_first_week(db_session, league.id, organizer)

    week = await box_week_service.declare_absence(
        db_session, league.id, 1, Actor(id="p4"), ids[3], reason="Holiday"
    )
    assert week["box_assignments"][0]["member_ids"] == ids[:3]
    absence = week["absences"][0]
    assert absence["member_id"] == ids[3]
    assert (absence["box_number"], absence["position"]) == (1, 3)
    assert absence["policy"] == "freeze"
    assert absence["reason"] == "Holiday"

    week = await box_week_service.assign_substitute(
        db_session, league.id, 1, organizer, ids[3], "Sam Sub", ["s1"], rating=50.0
    )
    substitute_id = week["absences"][0]["substitute_member_id"]
    assert week["absences"][0]["substitute_name"] == "Sam Sub"
    assert week["box_assignments"][0]["member_ids"] == ids[:3] + [substitute_id]

    with pytest.raises(ValidationError, match="substitute"):
        await league_service.withdraw_member(db_session, league.id, substitute_id, organizer)

    week = await box_week_service.activate_week(db_session, league.id, 1, organizer)
    assert week["total_matches"] == 6
    matches = await week_matches(db_session, league.id, 1)
    assert sum(1 for m in matches if "s1" in m.participant_ids) == 3
    assert not any("p4" in m.participant_ids for m in matches)

    await box_week_service.start_closing(db_session, league.id, 1, organizer)
    await play_out(db_session, organizer, league.id, 1)
    week = await box_week_service.finalize_week(db_session, league.id, 1, organizer)

    box_one = week["standings_snapshot"][0]["standings"]
    assert {row["member_id"] for row in box_one} == set(ids[:4])
    absent_row = next(row for row in box_one if row["member_id"] == ids[3])
    assert absent_row["absence_policy"] == "freeze"
    assert (absent_row["played"], absent_row["wins"]) == (0, 0)

    moves = {m["member_id"]: m["movement"] for m in week["movements"]}
    assert substitute_id not in moves
    assert moves[ids[3]] == "stayed"
    assert moves[ids[4]] == "promoted"
    assert sorted(moves[mid] for mid in ids[1:3]) == ["relegated", "stayed"]

    next_week = await box_week_service.get_week(db_session, league.id, 2)
    assert next_week["absences"] == []
    assert {ids[0], ids[3], ids[4]} <= set(next_week["box_assignments"][0]["member_ids"])
    assert all(substitute_id not in b["member_ids"] for b in next_week["box_assignments"])

    await recalculate_league_standings(db_session, league.id)
    substitute = await league_service.get_member(db_session, league.id, substitute_id)
    assert substitute.rank is None
    assert substitute.played == 3


@pytest.mark.asyncio
async def test_auto_relegate_policy(db_session, box_league, organizer):
    league, ids = await box_league(absence_policy="auto_relegate")
    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.declare_absence(db_session, league.id, 1, organizer, ids[0])

    week = await box_week_service.activate_week(db_session, league.id, 1, organizer)
    # Box one plays a three-member round robin
    assert week["total_matches"] == 6
    await box_week_service.start_closing(db_session, league.id, 1, organizer)
    await play_out(db_session, organizer, league.id, 1)
    week = await box_week_service.finalize_week(db_session, league.id, 1, organizer)

    moves = {m["member_id"]: m["movement"] for m in week["movements"]}
    assert moves[ids[0]] == "relegated"
    assert [moves[mid] for mid in ids[1:4]] == ["stayed", "stayed", "stayed"]
    assert moves[ids[4]] == "promoted"

    next_week = await box_week_service.get_week(db_session, league.id, 2)
    assert set(next_week["box_assignments"][0]["member_ids"]) == {ids[1], ids[2], ids[3], ids[4]}
    assert next_week["box_assignments"][1]["member_ids"][0] == ids[0]


@pytest.mark.asyncio
async def test_average_points_policy(db_session, box_league, organizer):
    league, ids = await box_league(absence_policy="average_points")
    member = await league_service.get_member(db_session, league.id, ids[3])
    member.played, member.wins, member.league_points = 3, 3, 9
    member.points_for, member.points_against, member.games_won = 33, 15, 3
    await db_session.commit()

    await box_week_service.seed_first_week(db_session, league.id, organizer)
    await box_week_service.declare_absence(db_session, league.id, 1, organizer, ids[3])
    await box_week_service.activate_week(db_session, league.id, 1, organizer)
    await box_week_service.start_closing(db_session, league.id, 1, organizer)
    await play_out(db_session, organizer, league.id, 1)
    week = await box_week_service.finalize_week(db_session, league.id, 1, organizer)

    # Everyone else in the box of three played two matches
    row = next(r for r in week["standings_snapshot"][0]["standings"] if r["member_id"] == ids[3])
    assert row["absence_policy"] == "average_points"
    assert row["played"] == 0
    assert (row["wins"], row["league_points"]) == (2, 6)
    assert (row["points_for"], row["points_against"]) == (22, 10)


@pytest.mark.asyncio
async def test_absence_rules(db_session, box_league, organizer):
    league, ids = await box_league()
    seeded = await box_week_service.seed_first_week(db_session, league.id, organizer)

    with pytest.raises(ValidationError, match="Only organizers or the member"):
        await box_week_service.declare_absence(db_session, league.id, 1, Actor(id="p5"), ids[3])

    await box_week_service.declare_absence(db_session, league.id, 1, Actor(id="p4"), ids[3])
    with pytest.raises(StateConflictError, match="already absent"):
        await box_week_service.declare_absence(db_session, league.id, 1, organizer, ids[3])
    with pytest.raises(StateConflictError, match="declared absences"):
        await box_week_service.update_box_assignments(
            db_session, league.id, 1, organizer, seeded["box_assignments"]
        )

    with pytest.raises(ValidationError):
        await box_week_service.assign_substitute(db_session, league.id, 1, Actor(id="p4"), ids[3], "Sam", ["s1"])
    with pytest.raises(ValidationError, match="active members"):
        await box_week_service.assign_substitute(db_session, league.id, 1, organizer, ids[3], "Six", ["p6"])
    with pytest.raises(NotFoundError):
        await box_week_service.assign_substitute(db_session, league.id, 1, organizer, ids[0], "Sam", ["s1"])

    await box_week_service.assign_substitute(db_session, league.id, 1, organizer, ids[3], "Sam", ["s1"])
    with pytest.raises(StateConflictError, match="already has a substitute"):
        await box_week_service.assign_substitute(db_session, league.id, 1, organizer, ids[3], "Kim", ["s2"])

    week = await box_week_service.remove_substitute(db_session, league.id, 1, organizer, ids[3])
    assert week["box_assignments"][0]["member_ids"] == ids[:3]
    assert week["absences"][0]["substitute_member_id"] is None
    again = await box_week_service.remove_substitute(db_session, league.id, 1, organizer, ids[3])
    assert again["box_assignments"] == week["box_assignments"]

    # The same players are reused as one substitute member
    first = await box_week_service.assign_substitute(db_session, league.id, 1, organizer, ids[3], "Sam", ["s1"])
    substitutes = [m for m in await league_service.list_members(db_session, league.id, include_withdrawn=True)
                   if m.player_ids == ["s1"]]
    assert len(substitutes) == 1
    assert first["absences"][0]["substitute_member_id"] == substitutes[0].id

    week = await box_week_service.cancel_absence(db_session, league.id, 1, Actor(id="p4"), ids[3])
    assert week["box_assignments"] == seeded["box_assignments"]
    assert week["absences"] == []
    with pytest.raises(NotFoundError):
        await box_week_service.cancel_absence(db_session, league.id, 1, organizer, ids[3])

    await box_week_service.activate_week(db_session, league.id, 1, organizer)
    with pytest.raises(StateConflictError, match="only in draft weeks"):
        await box_week_service.declare_absence(db_session, league.id, 1, organizer, ids[0])
