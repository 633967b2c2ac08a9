"""
Standings calculation service.
Processes official matches and computes member statistics and ranks.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import (
    ChallengeStatus,
    LadderChallenge,
    League,
    LeagueFormat,
    Member,
    MemberStatus,
    Match,
    MatchStatus,
    RESULT_STATUSES,
)
from league_engine.services import standings_service
from league_engine.services.errors import NotFoundError
from league_engine.services.schedule_service import seed_order
from league_engine.services.score_rules import games_won, point_totals
from league_engine.utils.constants import DEFAULT_TIEBREAKERS, DEFAULT_BOX_TIEBREAKERS, RECENT_FORM_LENGTH
from league_engine.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# MemberStats Class
# ============================================================================

class MemberStats:
    """Encapsulates the standings statistics for a single member."""

    def __init__(self, member_id: int, display_name: str = ""):
        self.member_id = member_id
        self.display_name = display_name
        self.played = 0
        self.wins = 0
        self.losses = 0
        self.league_points = 0
        self.points_for = 0
        self.points_against = 0
        self.games_won = 0
        self.games_lost = 0
        self.recent_results: List[str] = []

    @property
    def point_diff(self) -> int:
        return self.points_for - self.points_against

    @property
    def game_diff(self) -> int:
        return self.games_won - self.games_lost

    def record_result(self, won: bool, league_points: int) -> None:
        """Record a win or loss and the league points it earned."""
        self.played += 1
        if won:
            self.wins += 1
        else:
            self.losses += 1
        self.league_points += league_points
        self.recent_results = (self.recent_results + ["W" if won else "L"])[-RECENT_FORM_LENGTH:]

    def record_score(self, points_for: int, points_against: int, games_for: int, games_against: int) -> None:
        self.points_for += points_for
        self.points_against += points_against
        self.games_won += games_for
        self.games_lost += games_against

    def to_dict(self) -> Dict:
        return {
            "member_id": self.member_id,
            "display_name": self.display_name,
            "played": self.played,
            "wins": self.wins,
            "losses": self.losses,
            "league_points": self.league_points,
            "points_for": self.points_for,
            "points_against": self.points_against,
            "point_diff": self.point_diff,
            "games_won": self.games_won,
            "games_lost": self.games_lost,
            "game_diff": self.game_diff,
            "recent_results": list(self.recent_results),
        }


# ============================================================================
# StandingsTracker Class
# ============================================================================

class StandingsTracker:
    """Accumulates MemberStats across a sequence of official matches."""

    def __init__(self, points_for_win: int = 3, points_for_loss: int = 0, points_for_forfeit_loss: int = 0):
        self.points_for_win = points_for_win
        self.points_for_loss = points_for_loss
        self.points_for_forfeit_loss = points_for_forfeit_loss
        self.stats: Dict[int, MemberStats] = {}
        self.direct_results: List[Tuple[int, int]] = []  # (winner member id, loser member id)
        self.match_count = 0

    @classmethod
    def for_league(cls, league: League) -> "StandingsTracker":
        return cls(
            points_for_win=league.points_for_win,
            points_for_loss=league.points_for_loss,
            points_for_forfeit_loss=league.points_for_forfeit_loss,
        )

    def get_stats(self, member_id: int, display_name: str = "") -> MemberStats:
        if member_id not in self.stats:
            self.stats[member_id] = MemberStats(member_id, display_name)
        elif display_name and not self.stats[member_id].display_name:
            self.stats[member_id].display_name = display_name
        return self.stats[member_id]

    def process_match(self, match: Match) -> None:
        """
        Credit one official match to both sides.

        Matches without a winner, or whose status does not produce a result,
        are skipped.
        """
        if match.status not in RESULT_STATUSES or match.winner_side not in ("a", "b"):
            return

        winners = match.side_a_member_ids if match.winner_side == "a" else match.side_b_member_ids
        losers = match.side_b_member_ids if match.winner_side == "a" else match.side_a_member_ids
        is_forfeit = match.status in (MatchStatus.FORFEIT, MatchStatus.NO_SHOW)
        losing_points = self.points_for_forfeit_loss if is_forfeit else self.points_for_loss

        for member_id in winners or []:
            self.get_stats(member_id).record_result(True, self.points_for_win)
        for member_id in losers or []:
            self.get_stats(member_id).record_result(False, losing_points)

        if not is_forfeit and match.scores:
            a_points, b_points = point_totals(match.scores)
            a_games, b_games = games_won(match.scores)
            for member_id in match.side_a_member_ids or []:
                self.get_stats(member_id).record_score(a_points, b_points, a_games, b_games)
            for member_id in match.side_b_member_ids or []:
                self.get_stats(member_id).record_score(b_points, a_points, b_games, a_games)

        for winner_id in winners or []:
            for loser_id in losers or []:
                self.direct_results.append((winner_id, loser_id))
        self.match_count += 1

    def process_matches(self, matches: Iterable[Match]) -> None:
        for match in order_matches(matches):
            self.process_match(match)

    def head_to_head(self):
        return standings_service.make_head_to_head(self.direct_results)


def order_matches(matches: Iterable[Match]) -> List[Match]:
    """Order matches chronologically for recent-form tracking."""
    return sorted(matches, key=_match_order_key)


def _match_order_key(match: Match):
    finalized = ensure_utc(match.finalized_at)
    return (
        match.week_number or 0,
        match.round_number or 0,
        finalized.timestamp() if finalized else 0.0,
        match.id or 0,
    )


def league_tiebreakers(league: League) -> List[str]:
    if league.tiebreakers:
        return list(league.tiebreakers)
    return list(DEFAULT_BOX_TIEBREAKERS if league.format.is_box else DEFAULT_TIEBREAKERS)


def rank_stats(stats: List[MemberStats], tiebreakers: List[str], tracker: StandingsTracker) -> List[MemberStats]:
    return standings_service.rank(stats, tiebreakers, head_to_head=tracker.head_to_head())


# ============================================================================
# Database entry points
# ============================================================================

async def recalculate_league_standings(session: AsyncSession, league_id: int) -> Dict:
    """
    Recompute every member's stats and rank from the league's official matches.

    This is the standings queue callback; it commits its own work.

    Returns:
        Dict with member_count and match_count
    """
    league = await session.get(League, league_id)
    if league is None:
        raise NotFoundError(f"League {league_id} not found")

    result = await session.execute(
        select(Member).where(Member.league_id == league_id).order_by(Member.id)
    )
    members = result.scalars().all()

    result = await session.execute(
        select(Match).where(Match.league_id == league_id, Match.status.in_(RESULT_STATUSES))
    )
    matches = result.scalars().all()

    tracker = StandingsTracker.for_league(league)
    for member in members:
        tracker.get_stats(member.id, member.display_name)
    tracker.process_matches(matches)

    if league.format == LeagueFormat.LADDER:
        ranks = {mid: position for position, mid in enumerate(ladder_order(members, matches), start=1)}
        await _sync_challenges(session, league_id, matches)
    else:
        active_ids = [m.id for m in members if m.status == MemberStatus.ACTIVE]
        ranked = rank_stats([tracker.stats[mid] for mid in active_ids], league_tiebreakers(league), tracker)
        ranks = {stats.member_id: position for position, stats in enumerate(ranked, start=1)}

    for member in members:
        stats = tracker.stats[member.id]
        member.played = stats.played
        member.wins = stats.wins
        member.losses = stats.losses
        member.league_points = stats.league_points
        member.points_for = stats.points_for
        member.points_against = stats.points_against
        member.games_won = stats.games_won
        member.games_lost = stats.games_lost
        member.recent_results = list(stats.recent_results)
        member.rank = ranks.get(member.id)

    await session.commit()
    logger.info(
        f"Recalculated standings for league {league_id}: "
        f"{len(members)} members, {tracker.match_count} matches"
    )
    return {"member_count": len(members), "match_count": tracker.match_count}


def ladder_order(members: Iterable[Member], matches: Iterable[Match]) -> List[int]:
    """
    Active member ids in ladder order.

    The ladder starts in seeding order and replays every official result, so
    a corrected score reorders the ladder on the next recalculation.
    Withdrawn members are dropped afterwards and everyone below moves up.
    """
    members = [m for m in members if m.status != MemberStatus.SUBSTITUTE]
    results = []
    for match in order_matches(matches):
        if match.status not in RESULT_STATUSES or match.winner_side not in ("a", "b"):
            continue
        winners = match.side_a_member_ids if match.winner_side == "a" else match.side_b_member_ids
        losers = match.side_b_member_ids if match.winner_side == "a" else match.side_a_member_ids
        if winners and losers:
            results.append((winners[0], losers[0]))

    ladder = standings_service.ladder_positions([m.id for m in seed_order(members)], results)
    active = {m.id for m in members if m.status == MemberStatus.ACTIVE}
    return [mid for mid in ladder if mid in active]


async def _sync_challenges(session: AsyncSession, league_id: int, matches: Iterable[Match]) -> None:
    """Mark accepted challenges whose match is official as completed, and keep winners current."""
    by_id = {m.id: m for m in matches}
    result = await session.execute(
        select(LadderChallenge).where(
            LadderChallenge.league_id == league_id,
            LadderChallenge.status.in_((ChallengeStatus.ACCEPTED, ChallengeStatus.COMPLETED)),
            LadderChallenge.match_id.isnot(None),
        )
    )
    for challenge in result.scalars().all():
        match = by_id.get(challenge.match_id)
        if match is None or match.winner_side not in ("a", "b"):
            continue
        winners = match.side_a_member_ids if match.winner_side == "a" else match.side_b_member_ids
        challenge.winner_member_id = winners[0]
        if challenge.status == ChallengeStatus.ACCEPTED:
            challenge.status = ChallengeStatus.COMPLETED
            challenge.completed_at = match.finalized_at or utcnow()
            logger.info(f"Challenge {challenge.id} in league {league_id} completed by match {match.id}")


def compute_box_standings(
    league: League,
    box_assignments: List[Dict],
    matches: Iterable[Match],
    names: Optional[Dict[int, str]] = None,
    absentees: Optional[Dict[int, Dict]] = None,
) -> List[Dict]:
    """
    Compute per-box standings for one week.

    Members listed in ``box_assignments`` are ranked; anyone else who played
    in the box (a substitute) counts only towards head-to-head and is left
    out of the rows.

    Args:
        league: League providing points config and tiebreakers
        box_assignments: Ordered ``{"box_number", "member_ids"}`` entries
        matches: The week's matches
        names: Optional member id -> display name
        absentees: Optional member id -> ``{"policy", "stats"}`` for members who
            sat the week out; ``stats`` replaces what they earned

    Returns:
        One entry per box: ``{"box_number", "standings": [...]}`` with a
        1-based ``position`` on every row
    """
    names = names or {}
    absentees = absentees or {}
    by_box: Dict[int, List[Match]] = {}
    for match in matches:
        by_box.setdefault(match.box_number, []).append(match)

    tiebreakers = league_tiebreakers(league)
    snapshot = []
    for box in box_assignments:
        tracker = StandingsTracker.for_league(league)
        for member_id in box["member_ids"]:
            tracker.get_stats(member_id, names.get(member_id, ""))
        tracker.process_matches(by_box.get(box["box_number"], []))
        for member_id in box["member_ids"]:
            if member_id in absentees:
                stats = tracker.stats[member_id]
                for key, value in absentees[member_id]["stats"].items():
                    setattr(stats, key, value)
        ranked = rank_stats([tracker.stats[mid] for mid in box["member_ids"]], tiebreakers, tracker)
        rows = []
        for position, stats in enumerate(ranked, start=1):
            row = stats.to_dict()
            row["position"] = position
            if stats.member_id in absentees:
                row["absence_policy"] = absentees[stats.member_id]["policy"]
            rows.append(row)
        snapshot.append({"box_number": box["box_number"], "standings": rows})
    return snapshot
