"""
Score legality rules.

Pure functions used by the score verification state machine to check that
submitted game scores describe a legal, complete match under a league's
game settings.
"""

import math
from typing import List, Optional, Sequence, Tuple

from league_engine.services.errors import ValidationError
from league_engine.utils.constants import (
    ALLOWED_BEST_OF,
    DEFAULT_BEST_OF,
    DEFAULT_POINTS_TO_WIN,
    DEFAULT_WIN_BY,
    DEUCE_CAP_MARGIN,
)

GameScore = Tuple[int, int]


class GameRules:
    """Game settings that decide whether a score is legal."""

    def __init__(
        self,
        points_to_win: int = DEFAULT_POINTS_TO_WIN,
        win_by: int = DEFAULT_WIN_BY,
        best_of: int = DEFAULT_BEST_OF,
        cap_at: Optional[int] = None,
    ):
        if win_by not in (1, 2):
            raise ValidationError(f"win_by must be 1 or 2, got {win_by}")
        if best_of not in ALLOWED_BEST_OF:
            raise ValidationError(f"best_of must be one of {ALLOWED_BEST_OF}, got {best_of}")
        if cap_at is not None and cap_at <= points_to_win:
            raise ValidationError(f"cap_at ({cap_at}) must be above points_to_win ({points_to_win})")
        self.points_to_win = points_to_win
        self.win_by = win_by
        self.best_of = best_of
        # An explicit cap ends a deuce game at the cap even with a 1-point margin
        self.explicit_cap = cap_at is not None
        if cap_at is None and win_by == 2:
            cap_at = points_to_win + DEUCE_CAP_MARGIN
        self.cap_at = cap_at

    @classmethod
    def from_league(cls, league) -> "GameRules":
        return cls(
            points_to_win=league.points_to_win,
            win_by=league.win_by,
            best_of=league.best_of,
            cap_at=league.cap_at,
        )

    @property
    def games_needed(self) -> int:
        return math.ceil(self.best_of / 2)


def game_error(score_a: int, score_b: int, rules: GameRules) -> Optional[str]:
    """
    Check a single game score.

    Returns:
        None if the game is legal, otherwise a human-readable reason
    """
    if not isinstance(score_a, int) or not isinstance(score_b, int) \
            or isinstance(score_a, bool) or isinstance(score_b, bool):
        return "Scores must be whole numbers"
    if score_a < 0 or score_b < 0:
        return "Scores cannot be negative"
    if score_a == score_b:
        return "Game cannot end in a tie"

    target = rules.points_to_win
    high, low = max(score_a, score_b), min(score_a, score_b)
    margin = high - low

    if high < target:
        return f"Winner must reach at least {target} points"

    if rules.win_by == 1:
        if high != target:
            return f"Game should have ended at {target} with win-by-1"
        return None

    if rules.cap_at is not None and high > rules.cap_at:
        return f"Score cannot exceed cap of {rules.cap_at}"

    if high == target:
        if low > target - 2:
            return f"Score {high}-{low} invalid. At {target} points, must win by 2 (e.g., {target}-{target - 2})"
        return None

    if rules.explicit_cap and high == rules.cap_at and low >= target - 1:
        return None
    if margin != 2 or low < target - 1:
        return (
            f"Score {high}-{low} invalid. In deuce (past {target}), must win by exactly 2. "
            f"Valid: {low + 2}-{low} or {high}-{high - 2}"
        )
    return None


def is_valid_game(score_a: int, score_b: int, rules: GameRules) -> bool:
    return game_error(score_a, score_b, rules) is None


def normalize_scores(scores: Sequence) -> List[List[int]]:
    """
    Coerce submitted scores into ``[[a, b], ...]``.

    Accepts pairs (lists/tuples) or mappings with ``score_a``/``score_b`` keys.
    """
    normalized = []
    for game in scores or []:
        if isinstance(game, dict):
            pair = [game.get("score_a"), game.get("score_b")]
        elif hasattr(game, "score_a") and hasattr(game, "score_b"):
            pair = [game.score_a, game.score_b]
        else:
            pair = list(game)
        if len(pair) != 2:
            raise ValidationError("Each game must have exactly two scores")
        normalized.append(pair)
    return normalized


def games_won(scores: Sequence[Sequence[int]]) -> Tuple[int, int]:
    """Count games won by side A and side B."""
    a_wins = sum(1 for a, b in scores if a > b)
    b_wins = sum(1 for a, b in scores if b > a)
    return a_wins, b_wins


def match_winner(scores: Sequence[Sequence[int]], rules: GameRules) -> Optional[str]:
    """Return "a" or "b" once a side has won enough games, otherwise None."""
    a_wins, b_wins = games_won(scores)
    if a_wins >= rules.games_needed:
        return "a"
    if b_wins >= rules.games_needed:
        return "b"
    return None


def validate_match_scores(scores: Sequence, rules: GameRules) -> List[List[int]]:
    """
    Validate all games of a match and return them normalized.

    Raises:
        ValidationError: If any game is illegal, the match is incomplete,
            or games were recorded after the match was decided
    """
    games = normalize_scores(scores)
    if not games:
        raise ValidationError("At least one game score is required")
    if len(games) > rules.best_of:
        raise ValidationError(
            f"Too many games. Best of {rules.best_of} allows maximum {rules.best_of} games"
        )

    for index, (score_a, score_b) in enumerate(games, start=1):
        error = game_error(score_a, score_b, rules)
        if error:
            raise ValidationError(f"Game {index}: {error}")

    a_wins = b_wins = 0
    for index, (score_a, score_b) in enumerate(games, start=1):
        if a_wins >= rules.games_needed or b_wins >= rules.games_needed:
            raise ValidationError(
                f"Match was decided after game {index - 1}, but more games were recorded"
            )
        if score_a > score_b:
            a_wins += 1
        else:
            b_wins += 1

    if match_winner(games, rules) is None:
        raise ValidationError(
            f"Match not complete. Score: {a_wins}-{b_wins}, need {rules.games_needed} games to win"
        )
    return games


def point_totals(scores: Sequence[Sequence[int]]) -> Tuple[int, int]:
    """Total points scored by side A and side B across all games."""
    return sum(a for a, _ in scores), sum(b for _, b in scores)
