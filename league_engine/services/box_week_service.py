"""
Box league week lifecycle.

Each week of a box league moves draft -> active -> closing -> finalized.
Activation materializes the week's rotation matches, finalization freezes
per-box standings, applies promotion and relegation, and seeds the next
week's draft. An active week can be rolled back to draft by an organizer
as long as none of its results are official.
"""

import logging
import warnings
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import (
    AbsencePolicy,
    BoxLeagueWeek,
    BoxWeekState,
    League,
    LeagueFormat,
    Match,
    MatchStatus,
    Member,
    MemberStatus,
    NotificationType,
    PostponeRecord,
    ScoreState,
    UNRESOLVED_STATUSES,
)
from league_engine.models.schemas import Actor
from league_engine.services import notification_service, stats_queue
from league_engine.services.calculation_service import compute_box_standings
from league_engine.services.errors import (
    NotFoundError,
    RecoveryWarning,
    StateConflictError,
    ValidationError,
)
from league_engine.services.league_service import get_member, is_organizer, list_members, require_organizer
from league_engine.services.locking import commit_or_conflict, get_league, lock_week
from league_engine.services.schedule_service import (
    box_fixtures,
    build_match,
    partition_members,
    seed_order,
)
from league_engine.utils.constants import MAX_BOX_SIZE, MIN_BOX_SIZE
from league_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

OPEN_STATES = (BoxWeekState.ACTIVE, BoxWeekState.CLOSING)


# ============================================================================
# Serialization
# ============================================================================


def week_to_dict(week: BoxLeagueWeek, warnings_list: Optional[List[str]] = None, **extra) -> Dict:
    data = {
        "id": week.id,
        "league_id": week.league_id,
        "week_number": week.week_number,
        "state": week.state,
        "box_assignments": [dict(box) for box in week.box_assignments or []],
        "match_ids": list(week.match_ids or []),
        "total_matches": week.total_matches,
        "standings_snapshot": week.standings_snapshot,
        "movements": week.movements,
        "frozen_boxes": list(week.frozen_boxes or []),
        "absences": [dict(absence) for absence in week.absences or []],
        "activated_at": week.activated_at,
        "closing_started_at": week.closing_started_at,
        "finalized_at": week.finalized_at,
        "warnings": list(warnings_list or []),
    }
    data.update(extra)
    return data


# ============================================================================
# Pure helpers
# ============================================================================


def normalize_assignments(assignments: Iterable) -> List[Dict]:
    """Coerce pydantic models or dicts to ``[{"box_number", "member_ids"}]``."""
    normalized = []
    for box in assignments or []:
        if hasattr(box, "model_dump"):
            box = box.model_dump()
        normalized.append({"box_number": int(box["box_number"]), "member_ids": [int(m) for m in box["member_ids"]]})
    return normalized


def validate_assignments(assignments: List[Dict], active_ids: Iterable[int]) -> None:
    """
    Raises:
        ValidationError: Bad box numbering, box sizes, duplicate or inactive members
    """
    if not assignments:
        raise ValidationError("A week needs at least one box")
    numbers = [box["box_number"] for box in assignments]
    if numbers != list(range(1, len(assignments) + 1)):
        raise ValidationError("Boxes must be numbered 1, 2, ... in order")

    active = set(active_ids)
    seen = set()
    for box in assignments:
        size = len(box["member_ids"])
        if not MIN_BOX_SIZE <= size <= MAX_BOX_SIZE:
            raise ValidationError(
                f"Box {box['box_number']} has {size} members; boxes hold {MIN_BOX_SIZE}-{MAX_BOX_SIZE}"
            )
        for member_id in box["member_ids"]:
            if member_id in seen:
                raise ValidationError(f"Member {member_id} appears in more than one box")
            if member_id not in active:
                raise ValidationError(f"Member {member_id} is not an active member of this league")
            seen.add(member_id)


def compute_movements(
    snapshot: List[Dict],
    promotion_count: int,
    relegation_count: int,
    frozen_boxes: Sequence[int] = (),
) -> Tuple[List[List[int]], List[Dict]]:
    """
    Apply promotion and relegation to a finalized week's box standings.

    The top ``promotion_count`` of each box below box 1 move up to the bottom
    of the box above; the bottom ``relegation_count`` of each box above the
    last move down to the top of the box below. No one moves across the
    boundary of a frozen box.

    Rows carrying an ``absence_policy`` follow it: frozen absentees keep
    their box, auto-relegated absentees take relegation places first and
    drop even when the box relegates no one.

    Args:
        snapshot: Per-box standings, box 1 first, rows in finishing order

    Returns:
        (member ids per box for next week, one movement record per member)
    """
    total = len(snapshot)
    frozen = set(frozen_boxes or [])
    promoted: Dict[int, List[int]] = {}
    relegated: Dict[int, List[int]] = {}
    stayed: Dict[int, List[int]] = {}
    movements = []

    for index, box in enumerate(snapshot):
        number = box["box_number"]
        rows = box["standings"]
        ids = [row["member_id"] for row in rows]

        can_promote = index > 0 and number not in frozen and snapshot[index - 1]["box_number"] not in frozen
        can_relegate = index < total - 1 and number not in frozen and snapshot[index + 1]["box_number"] not in frozen

        policies = {row["member_id"]: row.get("absence_policy") for row in rows}
        forced_down = [m for m in ids if policies[m] == AbsencePolicy.AUTO_RELEGATE]
        movable = [m for m in ids if policies[m] not in (AbsencePolicy.FREEZE, AbsencePolicy.AUTO_RELEGATE)]

        up = movable[:promotion_count] if can_promote else []
        down = []
        if can_relegate:
            slots = max(relegation_count - len(forced_down), 0)
            bottom = movable[len(movable) - slots:] if slots else []
            down = forced_down + [m for m in bottom if m not in up]
        promoted[index] = up
        relegated[index] = down
        stayed[index] = [m for m in ids if m not in up and m not in down]

        for position, row in enumerate(rows, start=1):
            member_id = row["member_id"]
            if member_id in up:
                movement, to_box = "promoted", snapshot[index - 1]["box_number"]
            elif member_id in down:
                movement, to_box = "relegated", snapshot[index + 1]["box_number"]
            else:
                movement, to_box = "stayed", number
            movements.append({
                "member_id": member_id,
                "display_name": row.get("display_name", ""),
                "from_box": number,
                "to_box": to_box,
                "from_position": position,
                "movement": movement,
                "absence_policy": row.get("absence_policy"),
            })

    next_boxes = []
    for index in range(total):
        from_above = relegated.get(index - 1, []) if index > 0 else []
        from_below = promoted.get(index + 1, []) if index < total - 1 else []
        next_boxes.append(from_above + stayed[index] + from_below)
    return next_boxes, movements


def build_next_assignments(
    next_boxes: List[List[int]],
    active_ids: Sequence[int],
    box_size: int,
) -> List[Dict]:
    """
    Turn moved boxes into assignments for the current membership.

    Withdrawn members are dropped and members without a box join the bottom
    box. If that leaves a box outside the allowed sizes the whole ladder is
    repartitioned in order.
    """
    active = list(active_ids)
    active_set = set(active)
    boxes = [[m for m in box if m in active_set] for box in next_boxes]
    placed = {m for box in boxes for m in box}
    newcomers = [m for m in active if m not in placed]
    if boxes:
        boxes[-1] = boxes[-1] + newcomers
    else:
        boxes = [newcomers]
    boxes = [box for box in boxes if box]

    if all(MIN_BOX_SIZE <= len(box) <= MAX_BOX_SIZE for box in boxes):
        return [{"box_number": n, "member_ids": box} for n, box in enumerate(boxes, start=1)]
    ordered = [m for box in boxes for m in box]
    return partition_members(ordered, box_size)


_POLICY_STATS = ("wins", "losses", "league_points", "points_for", "points_against", "games_won", "games_lost")


def apply_absence_policy(policy, season, expected_matches: int) -> Dict[str, int]:
    """
    Stats an absent member is credited with for the week.

    Args:
        policy: AbsencePolicy (or its value)
        season: The member's season stats so far (anything with the stat attributes)
        expected_matches: Matches the member would have played in their box

    Returns:
        Stat name -> value; zeros unless the policy is ``average_points``
    """
    stats = {"played": 0}
    stats.update(dict.fromkeys(_POLICY_STATS, 0))
    if AbsencePolicy(policy) == AbsencePolicy.AVERAGE_POINTS and season.played:
        scale = expected_matches / season.played
        for key in _POLICY_STATS:
            stats[key] = round(getattr(season, key) * scale)
    return stats


def standings_assignments(box_assignments: List[Dict], absences: Sequence[Dict]) -> List[Dict]:
    """Boxes as they are ranked: substitutes out, absent members back in their slots."""
    substitutes = {a["substitute_member_id"] for a in absences if a.get("substitute_member_id")}
    boxes = []
    for box in box_assignments:
        member_ids = [m for m in box["member_ids"] if m not in substitutes]
        # Positions were taken as each absence was declared, so undo them newest first
        for absence in reversed(absences):
            if absence["box_number"] == box["box_number"]:
                member_ids.insert(min(absence["position"], len(member_ids)), absence["member_id"])
        boxes.append({"box_number": box["box_number"], "member_ids": member_ids})
    return boxes


# ============================================================================
# Queries
# ============================================================================


def _require_box_league(league: League) -> None:
    if not league.format.is_box:
        raise ValidationError(f"League {league.id} is not a box league")


def _require_draft(week: BoxLeagueWeek, action: str) -> None:
    if week.state != BoxWeekState.DRAFT:
        raise StateConflictError(f"{action} only in draft weeks; week {week.week_number} is {week.state.value}")


def _require_no_absences(week: BoxLeagueWeek) -> None:
    if week.absences:
        raise StateConflictError(
            f"Week {week.week_number} has declared absences; cancel them before rebuilding its boxes"
        )


def _find_absence(week: BoxLeagueWeek, member_id: int) -> Dict:
    for absence in week.absences or []:
        if absence["member_id"] == member_id:
            return absence
    raise NotFoundError(f"Member {member_id} has no absence in week {week.week_number}")


def _substitute_ids(week: BoxLeagueWeek) -> List[int]:
    return [a["substitute_member_id"] for a in week.absences or [] if a.get("substitute_member_id")]


def _expected_matches(box_matches: Sequence[Match], member_ids: Sequence[int]) -> int:
    """Most matches any one member of the box is scheduled for."""
    return max(
        (
            sum(1 for m in box_matches if member_id in (m.side_a_member_ids or []) + (m.side_b_member_ids or []))
            for member_id in member_ids
        ),
        default=0,
    )


async def _find_week(session: AsyncSession, league_id: int, week_number: int) -> Optional[BoxLeagueWeek]:
    result = await session.execute(
        select(BoxLeagueWeek).where(
            BoxLeagueWeek.league_id == league_id,
            BoxLeagueWeek.week_number == week_number,
        )
    )
    return result.scalar_one_or_none()


async def _week_matches(session: AsyncSession, league_id: int, week_number: int) -> List[Match]:
    result = await session.execute(
        select(Match)
        .where(
            Match.league_id == league_id,
            Match.week_number == week_number,
            Match.status != MatchStatus.CANCELLED,
        )
        .order_by(Match.box_number, Match.round_number, Match.id)
    )
    return list(result.scalars().all())


async def _members_by_id(session: AsyncSession, league_id: int) -> Dict[int, Member]:
    result = await session.execute(select(Member).where(Member.league_id == league_id))
    return {m.id: m for m in result.scalars().all()}


async def list_weeks(session: AsyncSession, league_id: int) -> List[Dict]:
    result = await session.execute(
        select(BoxLeagueWeek)
        .where(BoxLeagueWeek.league_id == league_id)
        .order_by(BoxLeagueWeek.week_number)
    )
    return [week_to_dict(w) for w in result.scalars().all()]


async def get_week(session: AsyncSession, league_id: int, week_number: int) -> Dict:
    """
    Read a week, repairing a missing match list on the way.

    An active or closing week must list its matches. If the list is empty it
    is rebuilt from the week's matches; if that is impossible a single
    RecoveryWarning is emitted and the week is still returned.
    """
    week = await _find_week(session, league_id, week_number)
    if week is None:
        raise NotFoundError(f"Week {week_number} not found in league {league_id}")

    issues: List[str] = []
    if week.state in OPEN_STATES and not week.match_ids:
        issue = await _repair_match_ids(session, week)
        if issue:
            warnings.warn(issue, RecoveryWarning, stacklevel=2)
            logger.warning(issue)
            issues.append(issue)
    return week_to_dict(week, issues)


async def _repair_match_ids(session: AsyncSession, week: BoxLeagueWeek) -> Optional[str]:
    """Rebuild ``match_ids`` from the matches table. Returns a message if repair failed."""
    league_id, week_number = week.league_id, week.week_number
    try:
        matches = await _week_matches(session, league_id, week_number)
        if not matches:
            return (
                f"Week {week_number} of league {league_id} is {week.state.value} "
                f"but no matches exist for it"
            )
        week.match_ids = [m.id for m in matches]
        week.total_matches = len(matches)
        await commit_or_conflict(session, f"Week {week_number}")
    except (SQLAlchemyError, StateConflictError) as e:
        await session.rollback()
        return f"Could not repair match list of week {week_number} in league {league_id}: {e}"
    logger.info(f"Repaired match list of week {week_number} in league {league_id} ({len(matches)} matches)")
    return None


# ============================================================================
# Transitions
# ============================================================================


async def create_draft(
    session: AsyncSession,
    league_id: int,
    week_number: int,
    assignments: Iterable,
    actor: Actor,
) -> Dict:
    """
    Create a draft week with box assignments and no matches.

    Raises:
        ValidationError: Not a box league, a gap in week numbers, or bad assignments
        StateConflictError: The week already exists
    """
    league = await get_league(session, league_id)
    _require_box_league(league)
    require_organizer(league, actor)

    if await _find_week(session, league_id, week_number):
        raise StateConflictError(f"Week {week_number} already exists in league {league_id}")
    result = await session.execute(
        select(BoxLeagueWeek.week_number)
        .where(BoxLeagueWeek.league_id == league_id)
        .order_by(BoxLeagueWeek.week_number.desc())
        .limit(1)
    )
    last = result.scalar_one_or_none() or 0
    if week_number != last + 1:
        raise ValidationError(f"Next week for league {league_id} is {last + 1}, not {week_number}")

    boxes = normalize_assignments(assignments)
    validate_assignments(boxes, [m.id for m in await list_members(session, league_id)])

    week = _new_draft(league_id, week_number, boxes, actor.id)
    session.add(week)
    await session.commit()
    logger.info(f"Draft week {week_number} created for league {league_id} with {len(boxes)} boxes")
    return week_to_dict(week)


def _new_draft(league_id: int, week_number: int, boxes: List[Dict], created_by: str) -> BoxLeagueWeek:
    return BoxLeagueWeek(
        league_id=league_id,
        week_number=week_number,
        state=BoxWeekState.DRAFT,
        box_assignments=boxes,
        match_ids=[],
        total_matches=0,
        frozen_boxes=[],
        absences=[],
        created_by=created_by,
    )


async def seed_first_week(session: AsyncSession, league_id: int, actor: Actor) -> Dict:
    """Create week 1 by splitting active members, best rated first, into boxes."""
    league = await get_league(session, league_id)
    _require_box_league(league)
    members = seed_order(await list_members(session, league_id))
    boxes = partition_members([m.id for m in members], league.box_size)
    return await create_draft(session, league_id, 1, boxes, actor)


async def update_box_assignments(
    session: AsyncSession,
    league_id: int,
    week_number: int,
    actor: Actor,
    assignments: Iterable,
) -> Dict:
    """Replace a draft week's boxes."""
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    if week.state != BoxWeekState.DRAFT:
        raise StateConflictError(f"Only draft weeks can be edited; week {week_number} is {week.state.value}")
    _require_no_absences(week)

    boxes = normalize_assignments(assignments)
    validate_assignments(boxes, [m.id for m in await list_members(session, league_id)])
    week.box_assignments = boxes
    week.frozen_boxes = [b for b in week.frozen_boxes or [] if b <= len(boxes)]
    await commit_or_conflict(session, f"Week {week_number}")
    return week_to_dict(week)


async def recalculate_draft(session: AsyncSession, league_id: int, week_number: int, actor: Actor) -> Dict:
    """
    Recompute a draft's boxes from the previous finalized week.

    Returns:
        The week, with ``movements`` describing where each member came from

    Raises:
        StateConflictError: The week is not a draft or the previous week is not finalized
    """
    league = await get_league(session, league_id)
    _require_box_league(league)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    if week.state != BoxWeekState.DRAFT:
        raise StateConflictError(f"Only draft weeks can be recalculated; week {week_number} is {week.state.value}")
    _require_no_absences(week)
    if week_number == 1:
        raise ValidationError("Week 1 has no previous week; use seeding instead")

    previous = await _find_week(session, league_id, week_number - 1)
    if previous is None or previous.state != BoxWeekState.FINALIZED or not previous.standings_snapshot:
        raise StateConflictError(f"Week {week_number - 1} must be finalized before week {week_number} is recalculated")

    next_boxes, movements = compute_movements(
        previous.standings_snapshot,
        league.promotion_count,
        league.relegation_count,
        previous.frozen_boxes,
    )
    active_ids = [m.id for m in seed_order(await list_members(session, league_id))]
    week.box_assignments = build_next_assignments(next_boxes, active_ids, league.box_size)
    week.frozen_boxes = []
    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(f"Recalculated draft week {week_number} of league {league_id}")
    return week_to_dict(week, movements=movements)


async def activate_week(session: AsyncSession, league_id: int, week_number: int, actor: Actor) -> Dict:
    """
    Activate a draft week and materialize its matches.

    If matches for the week already exist (an earlier activation stopped
    half way) they are reused instead of generated again.

    Raises:
        StateConflictError: Not a draft, another week is open, or the previous week
            is not finalized
        ValidationError: The boxes reference members who are no longer active
    """
    league = await get_league(session, league_id)
    _require_box_league(league)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    if week.state != BoxWeekState.DRAFT:
        raise StateConflictError(f"Week {week_number} is {week.state.value}; only draft weeks can be activated")

    result = await session.execute(
        select(BoxLeagueWeek.week_number).where(
            BoxLeagueWeek.league_id == league_id,
            BoxLeagueWeek.id != week.id,
            BoxLeagueWeek.state.in_(OPEN_STATES),
        )
    )
    open_weeks = list(result.scalars().all())
    if open_weeks:
        raise StateConflictError(f"Week {open_weeks[0]} is still open in league {league_id}")
    if week_number > 1:
        previous = await _find_week(session, league_id, week_number - 1)
        if previous is None or previous.state != BoxWeekState.FINALIZED:
            raise StateConflictError(f"Week {week_number - 1} must be finalized first")

    members = await _members_by_id(session, league_id)
    active_ids = [mid for mid, m in members.items() if m.status == MemberStatus.ACTIVE]
    validate_assignments(normalize_assignments(week.box_assignments), active_ids + _substitute_ids(week))

    matches = await _week_matches(session, league_id, week_number)
    if matches:
        logger.warning(
            f"Week {week_number} of league {league_id} already has {len(matches)} matches; reusing them"
        )
    else:
        rotating = league.format == LeagueFormat.ROTATING_BOX
        for box in week.box_assignments:
            for fixture in box_fixtures(box["member_ids"], rotating=rotating):
                matches.append(
                    build_match(league, fixture, members, week_number=week_number, box_number=box["box_number"])
                )
        session.add_all(matches)
        await session.flush()

    week.match_ids = [m.id for m in matches]
    week.total_matches = len(matches)
    week.state = BoxWeekState.ACTIVE
    week.activated_at = utcnow()
    week.activated_by = actor.id
    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(f"Week {week_number} of league {league_id} activated with {len(matches)} matches")

    player_ids = [p for box in week.box_assignments for mid in box["member_ids"] for p in members[mid].player_ids or []]
    await notification_service.notify(
        session,
        player_ids,
        NotificationType.WEEK_ACTIVATED,
        title=f"Week {week_number} is live",
        message=f"{league.name}: week {week_number} matches are ready.",
        league_id=league_id,
        data={"week_number": week_number},
    )
    await session.commit()
    return week_to_dict(week)


async def _count_unresolved(session: AsyncSession, league_id: int, week_number: int) -> Tuple[int, int]:
    matches = await _week_matches(session, league_id, week_number)
    pending = sum(1 for m in matches if m.status == MatchStatus.PENDING_CONFIRMATION)
    disputed = sum(1 for m in matches if m.status == MatchStatus.DISPUTED)
    return pending, disputed


async def start_closing(session: AsyncSession, league_id: int, week_number: int, actor: Actor) -> Dict:
    """
    Move an active week to closing.

    Returns:
        The week with advisory ``pending_matches`` and ``disputed_matches`` counts
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    if week.state != BoxWeekState.ACTIVE:
        raise StateConflictError(f"Week {week_number} is {week.state.value}; only active weeks can start closing")

    pending, disputed = await _count_unresolved(session, league_id, week_number)
    week.state = BoxWeekState.CLOSING
    week.closing_started_at = utcnow()
    week.closing_started_by = actor.id
    await commit_or_conflict(session, f"Week {week_number}")
    if pending or disputed:
        logger.info(f"Week {week_number} of league {league_id} closing with {pending} pending, {disputed} disputed")
    return week_to_dict(week, pending_matches=pending, disputed_matches=disputed)


async def finalize_week(session: AsyncSession, league_id: int, week_number: int, actor: Actor) -> Dict:
    """
    Freeze a closing week's standings and movements and seed the next draft.

    Raises:
        StateConflictError: Already finalized, not closing, or matches still
            pending confirmation or disputed
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    if week.state == BoxWeekState.FINALIZED:
        raise StateConflictError(f"Week {week_number} of league {league_id} is already finalized")
    if week.state != BoxWeekState.CLOSING:
        raise StateConflictError(f"Week {week_number} is {week.state.value}; start closing before finalizing")

    matches = await _week_matches(session, league_id, week_number)
    unresolved = [m.id for m in matches if m.status in UNRESOLVED_STATUSES]
    if unresolved:
        raise StateConflictError(
            f"Week {week_number} has {len(unresolved)} matches pending confirmation or disputed: {unresolved}"
        )

    members = await _members_by_id(session, league_id)
    names = {mid: m.display_name for mid, m in members.items()}
    absences = list(week.absences or [])
    absentees = {}
    for absence in absences:
        box_matches = [m for m in matches if m.box_number == absence["box_number"]]
        box_ids = next(box["member_ids"] for box in week.box_assignments if box["box_number"] == absence["box_number"])
        absentees[absence["member_id"]] = {
            "policy": absence["policy"],
            "stats": apply_absence_policy(
                absence["policy"], members[absence["member_id"]], _expected_matches(box_matches, box_ids)
            ),
        }
    snapshot = compute_box_standings(
        league, standings_assignments(week.box_assignments, absences), matches, names, absentees
    )
    next_boxes, movements = compute_movements(
        snapshot, league.promotion_count, league.relegation_count, week.frozen_boxes
    )

    week.standings_snapshot = snapshot
    week.movements = movements
    week.state = BoxWeekState.FINALIZED
    week.finalized_at = utcnow()
    week.finalized_by = actor.id

    next_week = None
    if week_number < league.total_weeks:
        active_ids = [m.id for m in seed_order(m for m in members.values() if m.status == MemberStatus.ACTIVE)]
        boxes = build_next_assignments(next_boxes, active_ids, league.box_size)
        next_week = await _find_week(session, league_id, week_number + 1)
        if next_week is None:
            next_week = _new_draft(league_id, week_number + 1, boxes, actor.id)
            session.add(next_week)
        elif next_week.state == BoxWeekState.DRAFT:
            if next_week.absences:
                logger.warning(
                    f"Reseeding draft week {week_number + 1} of league {league_id} drops "
                    f"{len(next_week.absences)} declared absences"
                )
            next_week.box_assignments = boxes
            next_week.absences = []

    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(
        f"Week {week_number} of league {league_id} finalized"
        + (f"; draft week {week_number + 1} seeded" if next_week is not None else "")
    )

    player_ids = [p for m in members.values() if m.status == MemberStatus.ACTIVE for p in m.player_ids or []]
    await notification_service.notify(
        session,
        player_ids,
        NotificationType.WEEK_FINALIZED,
        title=f"Week {week_number} results",
        message=f"{league.name}: week {week_number} standings and box moves are final.",
        league_id=league_id,
        data={"week_number": week_number},
    )
    await session.commit()
    await stats_queue.request_recalculation(session, league_id)
    return week_to_dict(week, next_week_number=next_week.week_number if next_week is not None else None)


async def deactivate_week(session: AsyncSession, league_id: int, week_number: int, actor: Actor) -> Dict:
    """
    Roll an active week back to draft, deleting its matches.

    Raises:
        StateConflictError: The week is not active or one of its matches is official
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    if week.state != BoxWeekState.ACTIVE:
        raise StateConflictError(f"Week {week_number} is {week.state.value}; only active weeks can be deactivated")

    result = await session.execute(
        select(Match).where(Match.league_id == league_id, Match.week_number == week_number)
    )
    matches = list(result.scalars().all())
    official = [m.id for m in matches if m.score_state == ScoreState.OFFICIAL]
    if official:
        raise StateConflictError(
            f"Week {week_number} has official results ({official}); it cannot be deactivated"
        )

    match_ids = [m.id for m in matches]
    if match_ids:
        await session.execute(
            delete(PostponeRecord)
            .where(PostponeRecord.match_id.in_(match_ids))
            .execution_options(synchronize_session=False)
        )
        for match in matches:
            await session.delete(match)

    week.state = BoxWeekState.DRAFT
    week.match_ids = []
    week.total_matches = 0
    week.activated_at = None
    week.activated_by = None
    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(f"Week {week_number} of league {league_id} deactivated; {len(match_ids)} matches deleted")
    return week_to_dict(week, deleted_matches=len(match_ids))


async def freeze_box_movement(
    session: AsyncSession,
    league_id: int,
    week_number: int,
    actor: Actor,
    box_number: int,
    frozen: bool = True,
) -> Dict:
    """Freeze (or unfreeze) promotion and relegation for one box of an unfinalized week."""
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    if week.state == BoxWeekState.FINALIZED:
        raise StateConflictError(f"Week {week_number} is finalized")
    if box_number not in [box["box_number"] for box in week.box_assignments or []]:
        raise ValidationError(f"Week {week_number} has no box {box_number}")

    boxes = set(week.frozen_boxes or [])
    if frozen:
        boxes.add(box_number)
    else:
        boxes.discard(box_number)
    week.frozen_boxes = sorted(boxes)
    await commit_or_conflict(session, f"Week {week_number}")
    return week_to_dict(week)


# ============================================================================
# Absences and substitutes
# ============================================================================


async def declare_absence(
    session: AsyncSession,
    league_id: int,
    week_number: int,
    actor: Actor,
    member_id: int,
    reason: Optional[str] = None,
) -> Dict:
    """
    Take a member out of a draft week's box.

    The absence remembers the member's box and slot so the member can be
    restored or replaced by a substitute. At finalization the member is
    ranked in that box with the stats the league's absence policy (as it
    stood when the absence was declared) gives them.

    Raises:
        ValidationError: The actor is neither an organizer nor the member, or
            the member is not in a box
        StateConflictError: The week is not a draft or the member is already absent
    """
    league = await get_league(session, league_id)
    _require_box_league(league)
    member = await get_member(session, league_id, member_id)
    if not is_organizer(league, actor) and actor.id not in (member.player_ids or []):
        raise ValidationError("Only organizers or the member can declare an absence")
    if member.status != MemberStatus.ACTIVE:
        raise ValidationError(f"Member {member_id} is {member.status.value}; only active members can be absent")

    week = await lock_week(session, league_id, week_number)
    _require_draft(week, "Absences can be declared")
    if any(a["member_id"] == member_id for a in week.absences or []):
        raise StateConflictError(f"Member {member_id} is already absent from week {week_number}")

    boxes = [{"box_number": box["box_number"], "member_ids": list(box["member_ids"])} for box in week.box_assignments]
    box = next((b for b in boxes if member_id in b["member_ids"]), None)
    if box is None:
        raise ValidationError(f"Member {member_id} is not in a box in week {week_number}")
    position = box["member_ids"].index(member_id)
    box["member_ids"].remove(member_id)

    week.box_assignments = boxes
    week.absences = list(week.absences or []) + [{
        "member_id": member_id,
        "display_name": member.display_name,
        "box_number": box["box_number"],
        "position": position,
        "reason": reason,
        "policy": AbsencePolicy(league.absence_policy).value,
        "substitute_member_id": None,
        "substitute_name": None,
        "declared_by": actor.id,
        "declared_at": utcnow().isoformat(),
    }]
    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(f"Member {member_id} absent from box {box['box_number']} of week {week_number} in league {league_id}")
    return week_to_dict(week)


async def cancel_absence(session: AsyncSession, league_id: int, week_number: int, actor: Actor, member_id: int) -> Dict:
    """Put an absent member back in their slot, dropping their substitute."""
    league = await get_league(session, league_id)
    member = await get_member(session, league_id, member_id)
    if not is_organizer(league, actor) and actor.id not in (member.player_ids or []):
        raise ValidationError("Only organizers or the member can cancel an absence")

    week = await lock_week(session, league_id, week_number)
    _require_draft(week, "Absences can be cancelled")
    absence = _find_absence(week, member_id)
    substitute_id = absence.get("substitute_member_id")

    boxes = []
    for box in week.box_assignments:
        member_ids = [m for m in box["member_ids"] if m != substitute_id]
        if box["box_number"] == absence["box_number"]:
            member_ids.insert(min(absence["position"], len(member_ids)), member_id)
        boxes.append({"box_number": box["box_number"], "member_ids": member_ids})

    week.box_assignments = boxes
    week.absences = [a for a in week.absences if a["member_id"] != member_id]
    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(f"Absence of member {member_id} from week {week_number} in league {league_id} cancelled")
    return week_to_dict(week)


async def assign_substitute(
    session: AsyncSession,
    league_id: int,
    week_number: int,
    actor: Actor,
    member_id: int,
    display_name: str,
    player_ids: List[str],
    rating: Optional[float] = None,
) -> Dict:
    """
    Fill an absent member's slot with a substitute.

    Substitutes are stored as league members with the ``substitute`` status
    so their matches can be scored like any other; they are never ranked and
    never carried into the next week. A substitute with the same players as
    an earlier one is reused.

    Raises:
        ValidationError: Bad roster, players already registered as active
            members, or a substitute already placed this week
        StateConflictError: The week is not a draft or the absence is already filled
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    _require_draft(week, "Substitutes can be assigned")
    absence = _find_absence(week, member_id)
    if absence.get("substitute_member_id"):
        raise StateConflictError(f"Absence of member {member_id} already has a substitute")

    player_ids = [p for p in dict.fromkeys(player_ids or []) if p]
    if not 1 <= len(player_ids) <= 2:
        raise ValidationError("A substitute needs one or two player ids")

    substitute = None
    for existing in await list_members(session, league_id, include_withdrawn=True):
        if existing.status == MemberStatus.ACTIVE and set(existing.player_ids or []) & set(player_ids):
            raise ValidationError(f"Players {sorted(player_ids)} are active members and cannot substitute")
        if existing.status == MemberStatus.SUBSTITUTE and set(existing.player_ids or []) == set(player_ids):
            substitute = existing
    if substitute is None:
        substitute = Member(
            league_id=league_id,
            display_name=display_name,
            player_ids=player_ids,
            rating=rating,
            status=MemberStatus.SUBSTITUTE,
            recent_results=[],
        )
        session.add(substitute)
        await session.flush()
    elif any(substitute.id in box["member_ids"] for box in week.box_assignments):
        raise ValidationError(f"Substitute {substitute.display_name} already plays in week {week_number}")

    boxes = []
    for box in week.box_assignments:
        member_ids = list(box["member_ids"])
        if box["box_number"] == absence["box_number"]:
            member_ids.insert(min(absence["position"], len(member_ids)), substitute.id)
        boxes.append({"box_number": box["box_number"], "member_ids": member_ids})

    week.box_assignments = boxes
    week.absences = [
        dict(a, substitute_member_id=substitute.id, substitute_name=substitute.display_name)
        if a["member_id"] == member_id else a
        for a in week.absences
    ]
    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(
        f"Substitute {substitute.id} ({substitute.display_name}) covers member {member_id} "
        f"in week {week_number} of league {league_id}"
    )
    return week_to_dict(week)


async def remove_substitute(session: AsyncSession, league_id: int, week_number: int, actor: Actor, member_id: int) -> Dict:
    """Take the substitute out of an absence. A no-op when none is assigned."""
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    week = await lock_week(session, league_id, week_number)
    _require_draft(week, "Substitutes can be removed")
    absence = _find_absence(week, member_id)
    substitute_id = absence.get("substitute_member_id")
    if not substitute_id:
        return week_to_dict(week)

    week.box_assignments = [
        {"box_number": box["box_number"], "member_ids": [m for m in box["member_ids"] if m != substitute_id]}
        for box in week.box_assignments
    ]
    week.absences = [
        dict(a, substitute_member_id=None, substitute_name=None) if a["member_id"] == member_id else a
        for a in week.absences
    ]
    await commit_or_conflict(session, f"Week {week_number}")
    logger.info(f"Substitute {substitute_id} removed from week {week_number} of league {league_id}")
    return week_to_dict(week)
