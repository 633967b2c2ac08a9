"""
SQLAlchemy ORM models for the league competition engine.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
    Index,
    JSON,
)
from sqlalchemy.sql import func
from league_engine.database.db import Base
from league_engine.utils.constants import (
    DEFAULT_ABSENCE_POLICY,
    DEFAULT_AUTO_FINALIZE_HOURS,
    DEFAULT_BEST_OF,
    DEFAULT_BOX_SIZE,
    DEFAULT_CHALLENGE_RANGE,
    DEFAULT_POINTS_FOR_FORFEIT_LOSS,
    DEFAULT_POINTS_FOR_LOSS,
    DEFAULT_POINTS_FOR_WIN,
    DEFAULT_POINTS_TO_WIN,
    DEFAULT_REQUIRED_CONFIRMATIONS,
    DEFAULT_WIN_BY,
)


class LeagueFormat(str, enum.Enum):
    """Competition format of a league."""

    ROUND_ROBIN = "round_robin"
    SWISS = "swiss"
    LADDER = "ladder"
    ROTATING_BOX = "rotating_box"
    FIXED_BOX = "fixed_box"

    @property
    def is_box(self) -> bool:
        return self in (LeagueFormat.ROTATING_BOX, LeagueFormat.FIXED_BOX)


class MemberStatus(str, enum.Enum):
    """League member status enum."""

    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    SUBSTITUTE = "substitute"  # stands in for absent box members; never ranked


class MatchStatus(str, enum.Enum):
    """Scheduling status of a match."""

    SCHEDULED = "scheduled"
    PENDING_CONFIRMATION = "pending_confirmation"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"
    FORFEIT = "forfeit"
    NO_SHOW = "no_show"


class ScoreState(str, enum.Enum):
    """Verification state of a match score."""

    UNSCORED = "unscored"
    PROPOSED = "proposed"
    SIGNED = "signed"
    OFFICIAL = "official"
    DISPUTED = "disputed"


class BoxWeekState(str, enum.Enum):
    """Lifecycle state of a box league week."""

    DRAFT = "draft"
    ACTIVE = "active"
    CLOSING = "closing"
    FINALIZED = "finalized"


class AbsencePolicy(str, enum.Enum):
    """What a box week's result is for a member who declared an absence."""

    FREEZE = "freeze"  # no stats, stays in the same box
    GHOST_SCORE = "ghost_score"  # no stats, normal movement
    AVERAGE_POINTS = "average_points"  # season average per match, normal movement
    AUTO_RELEGATE = "auto_relegate"  # no stats, always drops a box


class ChallengeStatus(str, enum.Enum):
    """Ladder challenge status enum."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Tiebreaker(str, enum.Enum):
    """Standings tiebreaker keys, applied in the order a league lists them."""

    LEAGUE_POINTS = "league_points"
    WINS = "wins"
    POINT_DIFF = "point_diff"
    POINTS_FOR = "points_for"
    POINTS_AGAINST = "points_against"
    GAME_DIFF = "game_diff"
    GAMES_WON = "games_won"
    GAMES_LOST = "games_lost"
    HEAD_TO_HEAD = "head_to_head"
    RECENT_FORM = "recent_form"


class RecalcJobStatus(str, enum.Enum):
    """Standings recalculation job status enum."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationType(str, enum.Enum):
    """Notification type enum."""

    SCORE_PROPOSED = "score_proposed"
    SCORE_DISPUTED = "score_disputed"
    SCORE_FINALIZED = "score_finalized"
    MATCH_POSTPONED = "match_postponed"
    MATCH_RESCHEDULED = "match_rescheduled"
    WEEK_ACTIVATED = "week_activated"
    WEEK_FINALIZED = "week_finalized"
    CHALLENGE_RECEIVED = "challenge_received"
    CHALLENGE_ACCEPTED = "challenge_accepted"
    CHALLENGE_DECLINED = "challenge_declined"


# Statuses counted by the standings pass
RESULT_STATUSES = (MatchStatus.COMPLETED, MatchStatus.FORFEIT, MatchStatus.NO_SHOW)

# Statuses that still need attention before a box week can be finalized
UNRESOLVED_STATUSES = (MatchStatus.PENDING_CONFIRMATION, MatchStatus.DISPUTED)


class League(Base):
    """League configuration root."""

    __tablename__ = "leagues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    format = Column(Enum(LeagueFormat), nullable=False)
    organizer_ids = Column(JSON, nullable=False, default=list)  # identity-provider ids

    # Standings order
    tiebreakers = Column(JSON, nullable=False, default=list)

    # Verification policy (editable at any time)
    required_confirmations = Column(Integer, default=DEFAULT_REQUIRED_CONFIRMATIONS, nullable=False)
    allow_disputes = Column(Boolean, default=True, nullable=False)
    auto_confirm = Column(Boolean, default=False, nullable=False)
    auto_finalize_hours = Column(Integer, default=DEFAULT_AUTO_FINALIZE_HOURS, nullable=False)  # 0 disables

    rating_governed = Column(Boolean, default=False, nullable=False)  # rating-eligible results

    # Game settings
    points_to_win = Column(Integer, default=DEFAULT_POINTS_TO_WIN, nullable=False)
    win_by = Column(Integer, default=DEFAULT_WIN_BY, nullable=False)
    best_of = Column(Integer, default=DEFAULT_BEST_OF, nullable=False)
    cap_at = Column(Integer, nullable=True)

    # Points awarded per result
    points_for_win = Column(Integer, default=DEFAULT_POINTS_FOR_WIN, nullable=False)
    points_for_loss = Column(Integer, default=DEFAULT_POINTS_FOR_LOSS, nullable=False)
    points_for_forfeit_loss = Column(Integer, default=DEFAULT_POINTS_FOR_FORFEIT_LOSS, nullable=False)

    # Format settings
    rounds = Column(Integer, default=1, nullable=False)
    box_size = Column(Integer, default=DEFAULT_BOX_SIZE, nullable=False)
    promotion_count = Column(Integer, default=1, nullable=False)
    relegation_count = Column(Integer, default=1, nullable=False)
    total_weeks = Column(Integer, default=1, nullable=False)
    absence_policy = Column(Enum(AbsencePolicy), default=DEFAULT_ABSENCE_POLICY, nullable=False)
    challenge_range = Column(Integer, default=DEFAULT_CHALLENGE_RANGE, nullable=False)  # ladder ranks

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def is_organizer(self, identity: str) -> bool:
        return identity in (self.organizer_ids or [])


class Member(Base):
    """A single player or team entered in a league."""

    __tablename__ = "league_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    display_name = Column(String(200), nullable=False)
    player_ids = Column(JSON, nullable=False, default=list)  # one or two identities
    rating = Column(Float, nullable=True)  # supplied by the rating service
    status = Column(Enum(MemberStatus), default=MemberStatus.ACTIVE, nullable=False)

    # Written only by the standings recalculation
    rank = Column(Integer, nullable=True)
    played = Column(Integer, default=0, nullable=False)
    wins = Column(Integer, default=0, nullable=False)
    losses = Column(Integer, default=0, nullable=False)
    league_points = Column(Integer, default=0, nullable=False)
    points_for = Column(Integer, default=0, nullable=False)
    points_against = Column(Integer, default=0, nullable=False)
    games_won = Column(Integer, default=0, nullable=False)
    games_lost = Column(Integer, default=0, nullable=False)
    recent_results = Column(JSON, nullable=False, default=list)  # newest last, "W"/"L"

    joined_at = Column(DateTime(timezone=True), server_default=func.now())
    withdrawn_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_league_members_league", "league_id", "status"),
    )

    @property
    def point_diff(self) -> int:
        return self.points_for - self.points_against

    @property
    def game_diff(self) -> int:
        return self.games_won - self.games_lost


class Court(Base):
    """A court available to a league's schedule."""

    __tablename__ = "courts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("league_id", "name", name="uq_courts_league_name"),
    )


class Match(Base):
    """A fixture between two sides and its score verification record."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    week_number = Column(Integer, nullable=True)
    round_number = Column(Integer, nullable=False, default=1)
    box_number = Column(Integer, nullable=True)

    # Sides: member ids are singles entries/teams; box doubles pairs have no member id
    side_a_member_ids = Column(JSON, nullable=False, default=list)
    side_b_member_ids = Column(JSON, nullable=False, default=list)
    side_a_player_ids = Column(JSON, nullable=False, default=list)
    side_b_player_ids = Column(JSON, nullable=False, default=list)
    side_a_name = Column(String(400), nullable=False)
    side_b_name = Column(String(400), nullable=False)

    court_id = Column(Integer, ForeignKey("courts.id"), nullable=True)
    time_slot = Column(String(20), nullable=True)
    scheduled_date = Column(Date, nullable=True)

    status = Column(Enum(MatchStatus), default=MatchStatus.SCHEDULED, nullable=False)
    score_state = Column(Enum(ScoreState), default=ScoreState.UNSCORED, nullable=False)

    # Active proposal (a new proposal replaces these fields)
    proposed_by = Column(String, nullable=True)
    proposed_side = Column(String(1), nullable=True)  # "a" or "b"
    proposed_scores = Column(JSON, nullable=True)  # [[a, b], ...]
    proposed_at = Column(DateTime(timezone=True), nullable=True)
    confirmations = Column(JSON, nullable=False, default=list)  # identities that signed
    required_confirmations = Column(Integer, default=DEFAULT_REQUIRED_CONFIRMATIONS, nullable=False)

    disputed_by = Column(String, nullable=True)
    dispute_reason = Column(String(200), nullable=True)
    dispute_notes = Column(Text, nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String(200), nullable=True)

    # Official record, written by finalize only
    scores = Column(JSON, nullable=True)
    winner_side = Column(String(1), nullable=True)
    finalized_by = Column(String, nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    auto_finalized = Column(Boolean, default=False, nullable=False)
    rating_eligible = Column(Boolean, default=False, nullable=False)

    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_matches_league_status", "league_id", "status"),
        Index("idx_matches_league_week", "league_id", "week_number"),
        Index("idx_matches_league_round", "league_id", "round_number"),
    )

    def player_ids_for(self, side: str) -> list:
        return list(self.side_a_player_ids if side == "a" else self.side_b_player_ids)

    def side_of(self, identity: str):
        """Return "a", "b" or None for the side an identity plays on."""
        if identity in (self.side_a_player_ids or []):
            return "a"
        if identity in (self.side_b_player_ids or []):
            return "b"
        return None

    @property
    def participant_ids(self) -> list:
        return list(self.side_a_player_ids or []) + list(self.side_b_player_ids or [])

    @property
    def eligible_signer_ids(self) -> list:
        """Identities who may confirm the proposal: the other side, or everyone for an organizer proposal."""
        if self.proposed_side is None:
            return self.participant_ids
        return self.player_ids_for("b" if self.proposed_side == "a" else "a")


class PostponeRecord(Base):
    """Attached to a match while it is postponed."""

    __tablename__ = "postpone_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(
        Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    reason = Column(String(50), nullable=False)
    notes = Column(Text, nullable=True)
    original_date = Column(Date, nullable=True)
    makeup_deadline = Column(Date, nullable=True)
    postponed_by = Column(String, nullable=False)
    postponed_at = Column(DateTime(timezone=True), server_default=func.now())


class LadderChallenge(Base):
    """A ladder member challenging someone ranked above them."""

    __tablename__ = "ladder_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    challenger_member_id = Column(Integer, ForeignKey("league_members.id"), nullable=False)
    challenged_member_id = Column(Integer, ForeignKey("league_members.id"), nullable=False)
    status = Column(Enum(ChallengeStatus), default=ChallengeStatus.PENDING, nullable=False)
    challenger_rank = Column(Integer, nullable=False)  # ladder positions when issued
    challenged_rank = Column(Integer, nullable=False)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="SET NULL"), nullable=True)
    completion_deadline = Column(DateTime(timezone=True), nullable=True)
    winner_member_id = Column(Integer, nullable=True)

    created_by = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    responded_by = Column(String, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_ladder_challenges_league_status", "league_id", "status"),
    )


class BoxLeagueWeek(Base):
    """One week of a box league: box assignments, matches and frozen results."""

    __tablename__ = "box_league_weeks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    week_number = Column(Integer, nullable=False)
    state = Column(Enum(BoxWeekState), default=BoxWeekState.DRAFT, nullable=False)

    box_assignments = Column(JSON, nullable=False, default=list)  # [{"box_number", "member_ids"}]
    match_ids = Column(JSON, nullable=False, default=list)
    total_matches = Column(Integer, default=0, nullable=False)
    standings_snapshot = Column(JSON, nullable=True)  # frozen on finalize
    movements = Column(JSON, nullable=True)
    frozen_boxes = Column(JSON, nullable=False, default=list)
    absences = Column(JSON, nullable=False, default=list)  # see box_week_service.declare_absence

    created_by = Column(String, nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    activated_by = Column(String, nullable=True)
    closing_started_at = Column(DateTime(timezone=True), nullable=True)
    closing_started_by = Column(String, nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    finalized_by = Column(String, nullable=True)

    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint("league_id", "week_number", name="uq_box_weeks_league_week"),
        Index("idx_box_weeks_league_state", "league_id", "state"),
    )


class StandingsRecalcJob(Base):
    """Queue for standings recalculation jobs."""

    __tablename__ = "standings_recalc_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    status = Column(
        Enum(RecalcJobStatus), default=RecalcJobStatus.PENDING, nullable=False
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_standings_recalc_jobs_status", "status"),
        Index("idx_standings_recalc_jobs_league", "league_id", "status"),
    )


class Notification(Base):
    """Notifications produced by engine transitions."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(String, nullable=False)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="SET NULL"), nullable=True)
    type = Column(String, nullable=False)  # NotificationType enum value
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_notifications_recipient_unread", "recipient_id", "is_read", "created_at"),
    )
