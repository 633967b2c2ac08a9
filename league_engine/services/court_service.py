"""
Court assignment.

Best-effort pass that places scheduled matches on a league's active courts,
one match per court per round. A match that cannot be placed is reported
and skipped; the rest of the batch is still assigned.
"""

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import Court, Match, MatchStatus
from league_engine.models.schemas import Actor
from league_engine.services.errors import ValidationError
from league_engine.services.league_service import list_courts, require_organizer
from league_engine.services.locking import commit_or_conflict, get_league

logger = logging.getLogger(__name__)

STRATEGIES = ("balanced", "round_robin")

# Matches that still need a court
ASSIGNABLE_STATUSES = (MatchStatus.SCHEDULED, MatchStatus.PENDING_CONFIRMATION)


def _slot_key(match: Match) -> Tuple[int, int]:
    return (match.week_number or 0, match.round_number or 0)


def plan_court_assignments(
    matches: List[Match],
    courts: List[Court],
    strategy: str = "balanced",
) -> Tuple[Dict[int, int], List[Dict]]:
    """
    Greedily choose a court for every match without one.

    Matches are visited in ascending round order. Courts already holding a
    match in a round are unavailable to other matches in that round.

    Args:
        matches: Candidate matches (those with a court only reserve it)
        courts: Active courts in preference order
        strategy: "balanced" picks the least used free court, "round_robin"
            cycles through the courts

    Returns:
        (match id -> court id, failures as {"match_id", "reason"})
    """
    if strategy not in STRATEGIES:
        raise ValidationError(f"Unknown court strategy: {strategy}")

    court_ids = [c.id for c in courts]
    usage = {court_id: 0 for court_id in court_ids}
    occupied: Dict[Tuple[int, int], set] = {}
    for match in matches:
        if match.court_id is not None:
            occupied.setdefault(_slot_key(match), set()).add(match.court_id)
            if match.court_id in usage:
                usage[match.court_id] += 1

    assigned: Dict[int, int] = {}
    failed: List[Dict] = []
    cursor = 0
    for match in sorted(matches, key=lambda m: (_slot_key(m), m.box_number or 0, m.id)):
        if match.court_id is not None:
            continue
        taken = occupied.setdefault(_slot_key(match), set())
        free = [court_id for court_id in court_ids if court_id not in taken]
        if not free:
            failed.append({
                "match_id": match.id,
                "reason": f"No free court in round {match.round_number}",
            })
            continue

        if strategy == "balanced":
            chosen = min(free, key=lambda court_id: (usage[court_id], court_ids.index(court_id)))
        else:
            ordered = court_ids[cursor:] + court_ids[:cursor]
            chosen = next(court_id for court_id in ordered if court_id in free)
            cursor = (court_ids.index(chosen) + 1) % len(court_ids)

        assigned[match.id] = chosen
        taken.add(chosen)
        usage[chosen] += 1
    return assigned, failed


async def assign_courts(
    session: AsyncSession,
    league_id: int,
    actor: Actor,
    strategy: str = "balanced",
    round_number: Optional[int] = None,
    week_number: Optional[int] = None,
) -> Dict:
    """
    Assign active courts to the league's unplaced matches.

    Returns:
        {"assigned": {match_id: court_id}, "failed": [{"match_id", "reason"}]}
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)

    courts = await list_courts(session, league_id, active_only=True)
    if not courts:
        raise ValidationError(f"League {league_id} has no active courts")

    query = select(Match).where(
        Match.league_id == league_id,
        Match.status.in_(ASSIGNABLE_STATUSES),
    )
    if round_number is not None:
        query = query.where(Match.round_number == round_number)
    if week_number is not None:
        query = query.where(Match.week_number == week_number)
    result = await session.execute(query)
    matches = list(result.scalars().all())

    assigned, failed = plan_court_assignments(matches, courts, strategy)
    by_id = {m.id: m for m in matches}
    for match_id, court_id in assigned.items():
        by_id[match_id].court_id = court_id
    await commit_or_conflict(session, f"Court assignment for league {league_id}")

    if failed:
        logger.warning(f"League {league_id}: {len(failed)} matches could not be given a court")
    logger.info(f"League {league_id}: assigned courts to {len(assigned)} matches ({strategy})")
    return {"assigned": assigned, "failed": failed}
