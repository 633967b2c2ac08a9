"""
Standings and tiebreaker engine.

Ranks members by their accumulated stats under an ordered list of
tiebreakers. Ranking is pure: it works on any objects exposing the stat
attributes (ORM members or in-memory MemberStats) and never touches the
database.
"""

from itertools import groupby
from typing import Callable, List, Optional, Sequence

from league_engine.database.models import Tiebreaker
from league_engine.services.errors import ValidationError
from league_engine.utils.constants import RECENT_FORM_LENGTH

HeadToHead = Callable[[object, Sequence], int]

# Keys where the larger value ranks higher
_HIGHER_IS_BETTER = {
    Tiebreaker.LEAGUE_POINTS: "league_points",
    Tiebreaker.WINS: "wins",
    Tiebreaker.POINT_DIFF: "point_diff",
    Tiebreaker.POINTS_FOR: "points_for",
    Tiebreaker.GAME_DIFF: "game_diff",
    Tiebreaker.GAMES_WON: "games_won",
}

# Keys where the smaller value ranks higher
_LOWER_IS_BETTER = {
    Tiebreaker.POINTS_AGAINST: "points_against",
    Tiebreaker.GAMES_LOST: "games_lost",
}


def no_head_to_head_preference(member, group) -> int:
    """Default head-to-head resolver: never separates members."""
    return 0


def recent_form(member) -> int:
    """Wins among the member's last five results."""
    results = list(getattr(member, "recent_results", None) or [])
    return sum(1 for r in results[-RECENT_FORM_LENGTH:] if r == "W")


def parse_tiebreakers(tiebreakers: Sequence) -> List[Tiebreaker]:
    """
    Convert tiebreaker names into Tiebreaker members.

    Raises:
        ValidationError: On an unknown or repeated key
    """
    parsed = []
    for key in tiebreakers or []:
        try:
            tiebreaker = Tiebreaker(key)
        except ValueError:
            raise ValidationError(f"Unknown tiebreaker: {key}")
        if tiebreaker in parsed:
            raise ValidationError(f"Tiebreaker listed twice: {tiebreaker.value}")
        parsed.append(tiebreaker)
    return parsed


def _key_value(member, tiebreaker: Tiebreaker, group: Sequence, head_to_head: Optional[HeadToHead]):
    """Value of one tiebreaker for a member; larger always ranks higher."""
    if tiebreaker in _HIGHER_IS_BETTER:
        return getattr(member, _HIGHER_IS_BETTER[tiebreaker])
    if tiebreaker in _LOWER_IS_BETTER:
        return -getattr(member, _LOWER_IS_BETTER[tiebreaker])
    if tiebreaker == Tiebreaker.RECENT_FORM:
        return recent_form(member)
    return (head_to_head or no_head_to_head_preference)(member, group)


def compare(a, b, tiebreakers: Sequence, head_to_head: Optional[HeadToHead] = None) -> int:
    """
    Compare two members under the tiebreaker list.

    Head-to-head is evaluated on the pair alone.

    Returns:
        Negative if ``a`` ranks above ``b``, positive if below, 0 if tied on every key
    """
    pair = [a, b]
    for tiebreaker in parse_tiebreakers(tiebreakers):
        a_value = _key_value(a, tiebreaker, pair, head_to_head)
        b_value = _key_value(b, tiebreaker, pair, head_to_head)
        if a_value != b_value:
            return -1 if a_value > b_value else 1
    return 0


def rank(members: Sequence, tiebreakers: Sequence, head_to_head: Optional[HeadToHead] = None) -> list:
    """
    Order members by the tiebreakers, best first.

    Members are split into groups by the first key, and each group is split
    by the next key, and so on. Head-to-head is scored inside the group tied
    on every earlier key, so a cycle of results ties and falls through to the
    next key. Members tied on every key keep their input order.

    Args:
        members: Objects exposing the stat attributes
        tiebreakers: Ordered tiebreaker keys
        head_to_head: Optional resolver ``(member, group) -> number`` scoring a
            member against the rest of its tied group (higher ranks first);
            without one, head-to-head never separates members

    Returns:
        New list of the members in rank order
    """
    return _rank_group(list(members), parse_tiebreakers(tiebreakers), head_to_head)


def _rank_group(group: list, keys: List[Tiebreaker], head_to_head: Optional[HeadToHead]) -> list:
    if len(group) < 2 or not keys:
        return group
    tiebreaker, rest = keys[0], keys[1:]
    values = [_key_value(member, tiebreaker, group, head_to_head) for member in group]
    order = sorted(range(len(group)), key=lambda i: values[i], reverse=True)

    ranked = []
    for _, indexes in groupby(order, key=lambda i: values[i]):
        ranked.extend(_rank_group([group[i] for i in indexes], rest, head_to_head))
    return ranked


def make_head_to_head(results: Sequence) -> HeadToHead:
    """
    Build a head-to-head resolver from direct results.

    Args:
        results: ``(winner_id, loser_id)`` pairs of member ids

    Returns:
        Resolver counting a member's direct wins over the other members of
        its group
    """
    wins = {}
    for winner_id, loser_id in results:
        wins[(winner_id, loser_id)] = wins.get((winner_id, loser_id), 0) + 1

    def resolve(member, group) -> int:
        member_id = _member_key(member)
        return sum(
            wins.get((member_id, _member_key(other)), 0)
            for other in group
            if other is not member
        )

    return resolve


def _member_key(member):
    return getattr(member, "member_id", None) or member.id


def ladder_positions(initial_order: Sequence[int], results: Sequence) -> List[int]:
    """
    Replay challenge results over a starting ladder.

    A winner ranked below the loser takes the loser's position; the loser
    and everyone between them drop one place. A winner already above the
    loser stays put. Results naming someone off the ladder are ignored.

    Args:
        initial_order: Member ids, top of the ladder first
        results: ``(winner_id, loser_id)`` pairs in the order they became official

    Returns:
        Member ids, top first
    """
    ladder = list(initial_order)
    for winner_id, loser_id in results:
        if winner_id not in ladder or loser_id not in ladder:
            continue
        winner_at, loser_at = ladder.index(winner_id), ladder.index(loser_id)
        if winner_at > loser_at:
            ladder.pop(winner_at)
            ladder.insert(loser_at, winner_id)
    return ladder
