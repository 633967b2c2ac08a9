"""
Defaults used across the league engine.
"""

import os

# Game settings
DEFAULT_POINTS_TO_WIN = 11
DEFAULT_WIN_BY = 2
DEFAULT_BEST_OF = 1
DEUCE_CAP_MARGIN = 4  # default cap_at = points_to_win + 4 for win-by-2 games
ALLOWED_BEST_OF = (1, 3, 5)

# Points awarded per result
DEFAULT_POINTS_FOR_WIN = 3
DEFAULT_POINTS_FOR_LOSS = 0
DEFAULT_POINTS_FOR_FORFEIT_LOSS = 0

# Standings
DEFAULT_TIEBREAKERS = ["league_points", "wins", "point_diff", "points_for"]
DEFAULT_BOX_TIEBREAKERS = ["wins", "head_to_head", "point_diff", "points_for"]
RECENT_FORM_LENGTH = 5

# Verification policy
DEFAULT_REQUIRED_CONFIRMATIONS = 1
DEFAULT_AUTO_FINALIZE_HOURS = 24

# Box leagues
MIN_BOX_SIZE = 3
MAX_BOX_SIZE = 6
DEFAULT_BOX_SIZE = 5
DEFAULT_ABSENCE_POLICY = "freeze"

# Ladder leagues
DEFAULT_CHALLENGE_RANGE = 3  # ranks above the challenger that may be challenged
CHALLENGE_COMPLETION_DAYS = 7

# Postponement: days allowed to play a makeup, per reason
MAKEUP_DAYS_BY_REASON = {
    "weather": 7,
    "venue_unavailable": 14,
    "player_unavailable": 14,
    "holiday": 7,
    "emergency": 21,
    "other": 14,
}
DEFAULT_MAKEUP_DAYS = 14

# Standings queue worker
STANDINGS_QUEUE_POLL_SECONDS = float(os.getenv("STANDINGS_QUEUE_POLL_SECONDS", "1.0"))
