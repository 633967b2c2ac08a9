"""
Tests for the standings and tiebreaker engine.
"""

from itertools import permutations
from types import SimpleNamespace

import pytest

from league_engine.services.errors import ValidationError
from league_engine.services.standings_service import (
    compare,
    make_head_to_head,
    parse_tiebreakers,
    rank,
    recent_form,
)


def member(member_id, **stats):
    defaults = {
        "league_points": 0,
        "wins": 0,
        "points_for": 0,
        "points_against": 0,
        "games_won": 0,
        "games_lost": 0,
        "recent_results": [],
    }
    defaults.update(stats)
    ns = SimpleNamespace(id=member_id, **defaults)
    ns.point_diff = ns.points_for - ns.points_against
    ns.game_diff = ns.games_won - ns.games_lost
    return ns


TIEBREAKERS = ["league_points", "wins", "point_diff", "points_for"]


def ids(members):
    return [m.id for m in members]


def test_point_diff_breaks_points_tie_regardless_of_input_order():
    a = member(1, league_points=6, wins=2, points_for=40, points_against=30)
    b = member(2, league_points=6, wins=2, points_for=40, points_against=20)

    assert ids(rank([a, b], TIEBREAKERS)) == [2, 1]
    assert ids(rank([b, a], TIEBREAKERS)) == [2, 1]


def test_first_separating_key_decides():
    leader = member(1, league_points=9, points_for=10, points_against=40)
    chaser = member(2, league_points=6, points_for=60, points_against=10)
    assert ids(rank([chaser, leader], TIEBREAKERS)) == [1, 2]


def test_full_tie_keeps_insertion_order():
    members = [member(i, league_points=3, wins=1, points_for=11, points_against=5) for i in (4, 2, 9)]
    assert ids(rank(members, TIEBREAKERS)) == [4, 2, 9]


def test_fewer_points_against_ranks_higher():
    a = member(1, points_against=30)
    b = member(2, points_against=20)
    assert ids(rank([a, b], ["points_against"])) == [2, 1]


def test_fewer_games_lost_ranks_higher():
    a = member(1, games_won=4, games_lost=3)
    b = member(2, games_won=4, games_lost=1)
    assert ids(rank([a, b], ["games_won", "games_lost"])) == [2, 1]


def test_head_to_head_without_resolver_has_no_preference():
    a = member(1, wins=2)
    b = member(2, wins=2)
    assert compare(a, b, ["wins", "head_to_head"]) == 0
    assert ids(rank([a, b], ["wins", "head_to_head"])) == [1, 2]


def test_head_to_head_resolver_from_direct_results():
    a = member(1, wins=2)
    b = member(2, wins=2)
    resolver = make_head_to_head([(2, 1)])
    assert ids(rank([a, b], ["wins", "head_to_head"], head_to_head=resolver)) == [2, 1]


def test_head_to_head_accepts_member_id_attribute():
    a = SimpleNamespace(member_id=10, wins=1)
    b = SimpleNamespace(member_id=20, wins=1)
    resolver = make_head_to_head([(10, 20), (10, 20), (20, 10)])
    assert resolver(a, [a, b]) == 2
    assert resolver(b, [a, b]) == 1
    assert compare(a, b, ["head_to_head"], head_to_head=resolver) < 0


@pytest.mark.parametrize("order", list(permutations([1, 2, 3])))
def test_head_to_head_cycle_falls_through_to_next_key(order):
    # 1 beat 2, 2 beat 3, 3 beat 1
    resolver = make_head_to_head([(1, 2), (2, 3), (3, 1)])
    by_id = {
        1: member(1, wins=1, points_for=20, points_against=11),
        2: member(2, wins=1, points_for=11, points_against=20),
        3: member(3, wins=1, points_for=16, points_against=16),
    }
    tiebreakers = ["wins", "head_to_head", "point_diff", "points_for"]

    ranked = rank([by_id[i] for i in order], tiebreakers, head_to_head=resolver)
    assert ids(ranked) == [1, 3, 2]


def test_head_to_head_only_counts_the_tied_group():
    # 3 and 4 are tied on wins; 4's wins over the leader do not count
    resolver = make_head_to_head([(4, 1), (4, 1), (3, 4), (1, 3), (1, 3)])
    leader = member(1, wins=2)
    a = member(3, wins=1)
    b = member(4, wins=1)
    ranked = rank([b, a, leader], ["wins", "head_to_head"], head_to_head=resolver)
    assert ids(ranked) == [1, 3, 4]


def test_recent_form_counts_last_five_wins():
    m = member(1, recent_results=["W", "W", "L", "W", "L", "W"])
    assert recent_form(m) == 3

    hot = member(2, recent_results=["W", "W", "W"])
    cold = member(3, recent_results=["L", "L", "W"])
    assert ids(rank([cold, hot], ["recent_form"])) == [2, 3]


def test_unknown_tiebreaker_rejected():
    with pytest.raises(ValidationError, match="Unknown tiebreaker"):
        parse_tiebreakers(["wins", "coin_flip"])


def test_duplicate_tiebreaker_rejected():
    with pytest.raises(ValidationError, match="twice"):
        parse_tiebreakers(["wins", "wins"])


def test_rank_returns_new_list():
    members = [member(1, wins=1), member(2, wins=2)]
    ranked = rank(members, ["wins"])
    assert ids(ranked) == [2, 1]
    assert ids(members) == [1, 2]
