"""
Schedule generator.

Produces fixtures for round robin leagues, Swiss rounds and box rotations.
The pairing algorithms are pure functions over member ids; the database
entry points turn their output into Match rows.
"""

import logging
import math
from datetime import date, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import (
    League,
    LeagueFormat,
    Match,
    MatchStatus,
    Member,
    MemberStatus,
    ScoreState,
)
from league_engine.models.schemas import Actor
from league_engine.services.errors import StateConflictError, ValidationError
from league_engine.services.league_service import list_members, require_organizer
from league_engine.services.locking import get_league
from league_engine.utils.constants import MAX_BOX_SIZE, MIN_BOX_SIZE

logger = logging.getLogger(__name__)

# A generated fixture: (round_number, side A member ids, side B member ids)
Fixture = Tuple[int, List[int], List[int]]

# Search budget for one Swiss pairing attempt
SWISS_SEARCH_LIMIT = 20000

# Doubles rotation for a box: per round, (team A indices, team B indices).
# At sizes 4 and 5 every player partners every other player exactly once.
ROTATION_PATTERNS: Dict[int, List[Tuple[Tuple[int, int], Tuple[int, int]]]] = {
    4: [
        ((0, 1), (2, 3)),
        ((0, 2), (1, 3)),
        ((0, 3), (1, 2)),
    ],
    5: [
        ((0, 1), (2, 3)),  # 4 rests
        ((0, 2), (3, 4)),  # 1 rests
        ((0, 3), (1, 4)),  # 2 rests
        ((0, 4), (1, 2)),  # 3 rests
        ((1, 3), (2, 4)),  # 0 rests
    ],
    6: [
        ((0, 1), (2, 3)),
        ((4, 5), (0, 2)),
        ((1, 3), (4, 0)),
        ((2, 5), (1, 4)),
        ((0, 3), (2, 4)),
        ((1, 5), (3, 0)),
    ],
}


# ============================================================================
# Pure pairing algorithms
# ============================================================================


def seed_order(members: Iterable[Member]) -> List[Member]:
    """Deterministic seeding: rating descending (unrated last), then id."""
    return sorted(members, key=lambda m: (m.rating is None, -(m.rating or 0), m.id))


def round_robin_fixtures(member_ids: Sequence[int], rounds: int = 1) -> List[Fixture]:
    """
    Circle-method round robin.

    Every unordered pair meets exactly ``rounds`` times. With an odd count a
    bye slot is added and pairings against it are dropped. Home and away swap
    on every other cycle.
    """
    ids: List[Optional[int]] = list(member_ids)
    if len(ids) < 2:
        return []
    if len(ids) % 2:
        ids.append(None)
    n = len(ids)
    rounds_per_cycle = n - 1

    fixtures = []
    for cycle in range(rounds):
        rotation = list(ids)
        for r in range(rounds_per_cycle):
            round_number = cycle * rounds_per_cycle + r + 1
            for i in range(n // 2):
                home, away = rotation[i], rotation[n - 1 - i]
                if home is None or away is None:
                    continue
                if cycle % 2:
                    home, away = away, home
                fixtures.append((round_number, [home], [away]))
            # Keep the first slot fixed, rotate the rest clockwise
            rotation = [rotation[0], rotation[-1]] + rotation[1:-1]
    return fixtures


def expected_round_robin_matches(count: int, rounds: int = 1) -> int:
    return rounds * count * (count - 1) // 2


def swiss_pairings(
    ranked_ids: Sequence[int],
    previous_pairs: Set[FrozenSet[int]],
    previous_byes: Optional[Set[int]] = None,
) -> Tuple[List[Tuple[int, int]], Optional[int]]:
    """
    Pair members for one Swiss round.

    Members are paired down the standings, each with the nearest member they
    have not met. If no repeat-free pairing exists the search is retried
    allowing one, two, ... rematches, so the rank-adjacent pairing is the
    worst case.

    Args:
        ranked_ids: Member ids in current standings order, best first
        previous_pairs: frozensets of member ids that have already met
        previous_byes: Members that already sat out a round

    Returns:
        (pairs, bye_member_id)
    """
    previous_byes = previous_byes or set()
    remaining = list(ranked_ids)
    bye = None
    if len(remaining) % 2:
        bye = next((mid for mid in reversed(remaining) if mid not in previous_byes), remaining[-1])
        remaining.remove(bye)

    for allowed_repeats in range(len(remaining) // 2 + 1):
        budget = [SWISS_SEARCH_LIMIT]
        pairs = _pair_down(remaining, previous_pairs, allowed_repeats, budget)
        if pairs is not None:
            return pairs, bye

    # Unreachable in practice: rank-adjacent pairing always fits the last budget
    return [(remaining[i], remaining[i + 1]) for i in range(0, len(remaining), 2)], bye


def _pair_down(
    remaining: List[int],
    previous_pairs: Set[FrozenSet[int]],
    allowed_repeats: int,
    budget: List[int],
) -> Optional[List[Tuple[int, int]]]:
    if not remaining:
        return []
    budget[0] -= 1
    if budget[0] < 0:
        return None

    top, rest = remaining[0], remaining[1:]
    for index, opponent in enumerate(rest):
        is_repeat = frozenset((top, opponent)) in previous_pairs
        if is_repeat and allowed_repeats == 0:
            continue
        tail = _pair_down(
            rest[:index] + rest[index + 1:],
            previous_pairs,
            allowed_repeats - (1 if is_repeat else 0),
            budget,
        )
        if tail is not None:
            return [(top, opponent)] + tail
    return None


def partition_box_sizes(count: int, box_size: int, min_size: int = MIN_BOX_SIZE) -> List[int]:
    """
    Split ``count`` members into box sizes, preferring boxes of ``box_size``.

    The remainder is absorbed by one oversized box when that stays within the
    maximum box size, otherwise it forms one smaller box when that is large
    enough, otherwise the sizes are evened out across ceil(count / box_size)
    boxes. 13 members at size 4 give [4, 4, 5].
    """
    if count < min_size:
        raise ValidationError(f"At least {min_size} members are needed to form a box, got {count}")
    if not min_size <= box_size <= MAX_BOX_SIZE:
        raise ValidationError(f"box_size must be between {min_size} and {MAX_BOX_SIZE}")

    full, remainder = divmod(count, box_size)
    if remainder == 0:
        return [box_size] * full
    if full >= 1 and box_size + remainder <= MAX_BOX_SIZE:
        return [box_size] * (full - 1) + [box_size + remainder]
    if remainder >= min_size:
        return [box_size] * full + [remainder]

    box_count = math.ceil(count / box_size)
    base, extra = divmod(count, box_count)
    # Larger boxes at the bottom, matching the oversized-box case
    sizes = [base] * (box_count - extra) + [base + 1] * extra
    if sizes[0] < min_size:
        box_count = count // min_size
        base, extra = divmod(count, box_count)
        sizes = [base] * (box_count - extra) + [base + 1] * extra
    return sizes


def partition_members(member_ids: Sequence[int], box_size: int) -> List[Dict]:
    """Assign ordered member ids to consecutive boxes, box 1 first."""
    assignments = []
    start = 0
    for number, size in enumerate(partition_box_sizes(len(member_ids), box_size), start=1):
        assignments.append({"box_number": number, "member_ids": list(member_ids[start:start + size])})
        start += size
    return assignments


def box_fixtures(member_ids: Sequence[int], rotating: bool = True) -> List[Fixture]:
    """
    Fixtures for one box.

    Rotating doubles boxes of 4-6 use the fixed rotation patterns; fixed-team
    boxes and boxes of 3 play a single round robin.
    """
    ids = list(member_ids)
    if rotating and len(ids) in ROTATION_PATTERNS:
        return [
            (round_number, [ids[i] for i in team_a], [ids[i] for i in team_b])
            for round_number, (team_a, team_b) in enumerate(ROTATION_PATTERNS[len(ids)], start=1)
        ]
    return round_robin_fixtures(ids, rounds=1)


# ============================================================================
# Match construction
# ============================================================================


def build_match(
    league: League,
    fixture: Fixture,
    members: Dict[int, Member],
    week_number: Optional[int] = None,
    box_number: Optional[int] = None,
    scheduled_date: Optional[date] = None,
) -> Match:
    round_number, side_a, side_b = fixture

    def players(ids):
        return [p for mid in ids for p in (members[mid].player_ids or [])]

    def name(ids):
        return " / ".join(members[mid].display_name for mid in ids)

    return Match(
        league_id=league.id,
        week_number=week_number,
        round_number=round_number,
        box_number=box_number,
        side_a_member_ids=list(side_a),
        side_b_member_ids=list(side_b),
        side_a_player_ids=players(side_a),
        side_b_player_ids=players(side_b),
        side_a_name=name(side_a),
        side_b_name=name(side_b),
        scheduled_date=scheduled_date,
        status=MatchStatus.SCHEDULED,
        score_state=ScoreState.UNSCORED,
        confirmations=[],
        required_confirmations=league.required_confirmations,
    )


def round_date(start_date: Optional[date], round_number: int, days_between_rounds: int) -> Optional[date]:
    if start_date is None:
        return None
    return start_date + timedelta(days=(round_number - 1) * days_between_rounds)


# ============================================================================
# Database entry points
# ============================================================================


async def _league_matches(session: AsyncSession, league_id: int, include_cancelled: bool = False) -> List[Match]:
    query = select(Match).where(Match.league_id == league_id)
    if not include_cancelled:
        query = query.where(Match.status != MatchStatus.CANCELLED)
    result = await session.execute(query.order_by(Match.round_number, Match.id))
    return list(result.scalars().all())


async def generate_schedule(
    session: AsyncSession,
    league_id: int,
    actor: Actor,
    round_number: Optional[int] = None,
    start_date: Optional[date] = None,
    days_between_rounds: int = 7,
) -> List[Match]:
    """
    Generate fixtures for a league and store them in one commit.

    Round robin leagues get their whole fixture list; Swiss leagues get the
    next round (or ``round_number``, which must be the next round).

    Raises:
        ValidationError: Ladder and box formats, too few members, bad round number
        StateConflictError: Fixtures already exist (round robin) or the round
            was already generated (Swiss)
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)

    if league.format == LeagueFormat.LADDER:
        raise ValidationError("Ladder matches are created by challenge, not generated")
    if league.format.is_box:
        raise ValidationError("Box league matches are generated when a week is activated")

    members = seed_order(await list_members(session, league_id))
    if len(members) < 2:
        raise ValidationError("At least 2 active members are needed to generate a schedule")
    by_id = {m.id: m for m in members}
    existing = await _league_matches(session, league_id)

    if league.format == LeagueFormat.ROUND_ROBIN:
        if existing:
            raise StateConflictError(
                f"League {league_id} already has {len(existing)} matches; clear the schedule first"
            )
        fixtures = round_robin_fixtures([m.id for m in members], league.rounds)
    else:
        fixtures = _next_swiss_round(league, members, existing, round_number)

    matches = [
        build_match(
            league,
            fixture,
            by_id,
            scheduled_date=round_date(start_date, fixture[0], days_between_rounds),
        )
        for fixture in fixtures
    ]
    session.add_all(matches)
    await session.commit()
    logger.info(f"Generated {len(matches)} matches for league {league_id} ({league.format.value})")
    return matches


def _next_swiss_round(
    league: League,
    members: List[Member],
    existing: List[Match],
    round_number: Optional[int],
) -> List[Fixture]:
    played_rounds = sorted({m.round_number for m in existing})
    next_round = (played_rounds[-1] + 1) if played_rounds else 1
    if round_number is not None and round_number < next_round:
        raise StateConflictError(f"Round {round_number} has already been generated")
    if round_number is not None and round_number > next_round:
        raise ValidationError(f"Round {round_number} cannot be generated before round {next_round}")

    unresolved = [
        m for m in existing
        if m.status in (MatchStatus.SCHEDULED, MatchStatus.PENDING_CONFIRMATION, MatchStatus.DISPUTED)
    ]
    if unresolved:
        raise StateConflictError(
            f"{len(unresolved)} matches from earlier rounds are unresolved; "
            f"finish them before generating round {next_round}"
        )

    previous_pairs = set()
    seen_by_round: Dict[int, Set[int]] = {}
    for match in existing:
        ids = list(match.side_a_member_ids or []) + list(match.side_b_member_ids or [])
        previous_pairs.add(frozenset(ids))
        seen_by_round.setdefault(match.round_number, set()).update(ids)
    active_ids = {m.id for m in members}
    previous_byes = set()
    for seen in seen_by_round.values():
        previous_byes |= active_ids - seen

    # Standings order first, seed order for unranked members
    ranked = sorted(members, key=lambda m: (m.rank is None, m.rank or 0))
    pairs, bye = swiss_pairings([m.id for m in ranked], previous_pairs, previous_byes)
    if bye is not None:
        logger.info(f"League {league.id} round {next_round}: member {bye} has a bye")
    return [(next_round, [a], [b]) for a, b in pairs]


async def clear_schedule(session: AsyncSession, league_id: int, actor: Actor) -> int:
    """
    Delete the league's unplayed fixtures.

    Only matches still in ``scheduled`` status are removed; anything with a
    score, postponement or result is history and stays. Box week matches are
    managed by the week lifecycle and are not touched.

    Returns:
        Number of matches deleted
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)

    result = await session.execute(
        delete(Match)
        .where(
            Match.league_id == league_id,
            Match.status == MatchStatus.SCHEDULED,
            Match.week_number.is_(None),
        )
        .execution_options(synchronize_session="fetch")
    )
    await session.commit()
    logger.info(f"Cleared {result.rowcount} scheduled matches from league {league_id}")
    return result.rowcount


async def list_matches(
    session: AsyncSession,
    league_id: int,
    round_number: Optional[int] = None,
    week_number: Optional[int] = None,
    status: Optional[MatchStatus] = None,
) -> List[Match]:
    query = select(Match).where(Match.league_id == league_id)
    if round_number is not None:
        query = query.where(Match.round_number == round_number)
    if week_number is not None:
        query = query.where(Match.week_number == week_number)
    if status is not None:
        query = query.where(Match.status == status)
    result = await session.execute(
        query.order_by(Match.week_number, Match.box_number, Match.round_number, Match.id)
    )
    return list(result.scalars().all())
