"""
Pydantic models for engine actors and API request/response validation.
"""

import enum
from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from league_engine.database.models import (
    AbsencePolicy,
    BoxWeekState,
    ChallengeStatus,
    LeagueFormat,
    MatchStatus,
    MemberStatus,
    ScoreState,
)


class ActorRole(str, enum.Enum):
    """Role an identity claims when acting on a league."""

    ORGANIZER = "organizer"
    PARTICIPANT = "participant"


class Actor(BaseModel):
    """The identity performing a transition, supplied by the identity provider."""

    id: str = Field(min_length=1)
    display_name: str = ""
    role: ActorRole = ActorRole.PARTICIPANT

    @property
    def name(self) -> str:
        return self.display_name or self.id


# ============================================================================
# Leagues
# ============================================================================


class CreateLeagueRequest(BaseModel):
    """Request to create a league."""

    name: str = Field(min_length=1, max_length=200)
    format: LeagueFormat
    organizer_ids: List[str] = Field(default_factory=list)
    tiebreakers: Optional[List[str]] = None
    required_confirmations: int = Field(1, ge=0)
    allow_disputes: bool = True
    auto_confirm: bool = False
    auto_finalize_hours: int = Field(24, ge=0)
    rating_governed: bool = False
    points_to_win: int = Field(11, ge=1)
    win_by: int = Field(2, ge=1, le=2)
    best_of: int = 1
    cap_at: Optional[int] = None
    points_for_win: int = Field(3, ge=0)
    points_for_loss: int = Field(0, ge=0)
    points_for_forfeit_loss: int = Field(0, ge=0)
    rounds: int = Field(1, ge=1)
    box_size: int = Field(5, ge=3, le=6)
    promotion_count: int = Field(1, ge=0)
    relegation_count: int = Field(1, ge=0)
    total_weeks: int = Field(1, ge=1)
    absence_policy: AbsencePolicy = AbsencePolicy.FREEZE
    challenge_range: int = Field(3, ge=1)


class UpdateLeagueSettingsRequest(BaseModel):
    """Partial league settings update; omitted fields are left unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    tiebreakers: Optional[List[str]] = None
    required_confirmations: Optional[int] = Field(None, ge=0)
    allow_disputes: Optional[bool] = None
    auto_confirm: Optional[bool] = None
    auto_finalize_hours: Optional[int] = Field(None, ge=0)
    rating_governed: Optional[bool] = None
    points_to_win: Optional[int] = Field(None, ge=1)
    win_by: Optional[int] = Field(None, ge=1, le=2)
    best_of: Optional[int] = None
    cap_at: Optional[int] = None
    points_for_win: Optional[int] = Field(None, ge=0)
    points_for_loss: Optional[int] = Field(None, ge=0)
    points_for_forfeit_loss: Optional[int] = Field(None, ge=0)
    rounds: Optional[int] = Field(None, ge=1)
    box_size: Optional[int] = Field(None, ge=3, le=6)
    promotion_count: Optional[int] = Field(None, ge=0)
    relegation_count: Optional[int] = Field(None, ge=0)
    total_weeks: Optional[int] = Field(None, ge=1)
    absence_policy: Optional[AbsencePolicy] = None
    challenge_range: Optional[int] = Field(None, ge=1)


class LeagueResponse(BaseModel):
    """League configuration."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    format: LeagueFormat
    organizer_ids: List[str]
    tiebreakers: List[str]
    required_confirmations: int
    allow_disputes: bool
    auto_confirm: bool
    auto_finalize_hours: int
    rating_governed: bool
    points_to_win: int
    win_by: int
    best_of: int
    cap_at: Optional[int] = None
    points_for_win: int
    points_for_loss: int
    points_for_forfeit_loss: int
    rounds: int
    box_size: int
    promotion_count: int
    relegation_count: int
    total_weeks: int
    absence_policy: AbsencePolicy
    challenge_range: int


class AddMemberRequest(BaseModel):
    """Register a player or team in a league."""

    display_name: str = Field(min_length=1, max_length=200)
    player_ids: List[str] = Field(min_length=1, max_length=2)
    rating: Optional[float] = None


class MemberResponse(BaseModel):
    """League member with standings stats."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    league_id: int
    display_name: str
    player_ids: List[str]
    rating: Optional[float] = None
    status: MemberStatus
    rank: Optional[int] = None
    played: int
    wins: int
    losses: int
    league_points: int
    points_for: int
    points_against: int
    point_diff: int
    games_won: int
    games_lost: int
    game_diff: int
    recent_results: List[str]


class AddCourtRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    sort_order: int = 0


class UpdateCourtRequest(BaseModel):
    is_active: bool


class CourtResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    league_id: int
    name: str
    is_active: bool
    sort_order: int


# ============================================================================
# Scheduling
# ============================================================================


class GenerateScheduleRequest(BaseModel):
    """Generate fixtures. Swiss leagues generate one round per call."""

    round_number: Optional[int] = Field(None, ge=1)
    start_date: Optional[date] = None
    days_between_rounds: int = Field(7, ge=0)


class AssignCourtsRequest(BaseModel):
    strategy: Literal["balanced", "round_robin"] = "balanced"
    round_number: Optional[int] = Field(None, ge=1)
    week_number: Optional[int] = Field(None, ge=1)


class CourtAssignmentFailure(BaseModel):
    match_id: int
    reason: str


class AssignCourtsResponse(BaseModel):
    assigned: Dict[int, int]  # match id -> court id
    failed: List[CourtAssignmentFailure]


# ============================================================================
# Matches and score verification
# ============================================================================


class GameScoreInput(BaseModel):
    """One game's score, side A first."""

    score_a: int = Field(ge=0)
    score_b: int = Field(ge=0)


class ProposeScoreRequest(BaseModel):
    scores: List[GameScoreInput] = Field(min_length=1)


class DisputeScoreRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=200)
    notes: Optional[str] = None


class FinalizeScoreRequest(BaseModel):
    """Finalize a match. Scores are required for an organizer shortcut or correction."""

    scores: Optional[List[GameScoreInput]] = None
    winner_side: Optional[Literal["a", "b"]] = None
    rating_eligible: Optional[bool] = None


class ForfeitRequest(BaseModel):
    forfeiting_side: Literal["a", "b"]
    no_show: bool = False


class PostponeMatchRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=50)
    notes: Optional[str] = None
    makeup_deadline_days: Optional[int] = Field(None, ge=1)


class RescheduleMatchRequest(BaseModel):
    scheduled_date: date
    time_slot: Optional[str] = None
    court_id: Optional[int] = None


class CancelPostponedMatchRequest(BaseModel):
    reason: Optional[str] = None


class PostponeRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    match_id: int
    reason: str
    notes: Optional[str] = None
    original_date: Optional[date] = None
    makeup_deadline: Optional[date] = None
    postponed_by: str
    postponed_at: Optional[datetime] = None


class MatchResponse(BaseModel):
    """Match with its verification record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    league_id: int
    week_number: Optional[int] = None
    round_number: int
    box_number: Optional[int] = None
    side_a_member_ids: List[int]
    side_b_member_ids: List[int]
    side_a_player_ids: List[str]
    side_b_player_ids: List[str]
    side_a_name: str
    side_b_name: str
    court_id: Optional[int] = None
    time_slot: Optional[str] = None
    scheduled_date: Optional[date] = None
    status: MatchStatus
    score_state: ScoreState
    proposed_by: Optional[str] = None
    proposed_side: Optional[str] = None
    proposed_scores: Optional[List[List[int]]] = None
    proposed_at: Optional[datetime] = None
    confirmations: List[str]
    required_confirmations: int
    disputed_by: Optional[str] = None
    dispute_reason: Optional[str] = None
    dispute_notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    scores: Optional[List[List[int]]] = None
    winner_side: Optional[str] = None
    finalized_by: Optional[str] = None
    finalized_at: Optional[datetime] = None
    auto_finalized: bool
    rating_eligible: bool


# ============================================================================
# Box weeks
# ============================================================================


class BoxAssignment(BaseModel):
    box_number: int = Field(ge=1)
    member_ids: List[int] = Field(min_length=2)


class CreateDraftRequest(BaseModel):
    week_number: int = Field(ge=1)
    box_assignments: List[BoxAssignment] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_box_numbers(self):
        """Box numbers must run 1..n in order."""
        numbers = [box.box_number for box in self.box_assignments]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError("box_number values must be 1, 2, ... in order")
        return self


class UpdateBoxAssignmentsRequest(BaseModel):
    box_assignments: List[BoxAssignment] = Field(min_length=1)


class FreezeBoxRequest(BaseModel):
    box_number: int = Field(ge=1)
    frozen: bool = True


class DeclareAbsenceRequest(BaseModel):
    member_id: int
    reason: Optional[str] = Field(None, max_length=200)


class AssignSubstituteRequest(BaseModel):
    """A substitute is matched to an earlier one with the same players, or created."""

    display_name: str = Field(min_length=1, max_length=200)
    player_ids: List[str] = Field(min_length=1, max_length=2)
    rating: Optional[float] = None


class BoxWeekResponse(BaseModel):
    """Box league week as returned by the lifecycle operations."""

    id: int
    league_id: int
    week_number: int
    state: BoxWeekState
    box_assignments: List[Dict]
    match_ids: List[int]
    total_matches: int
    standings_snapshot: Optional[List[Dict]] = None
    movements: Optional[List[Dict]] = None
    frozen_boxes: List[int]
    absences: List[Dict] = Field(default_factory=list)
    activated_at: Optional[datetime] = None
    closing_started_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    warnings: List[str] = Field(default_factory=list)
    pending_matches: Optional[int] = None
    disputed_matches: Optional[int] = None
    next_week_number: Optional[int] = None
    deleted_matches: Optional[int] = None


# ============================================================================
# Notifications
# ============================================================================


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    recipient_id: str
    league_id: Optional[int] = None
    match_id: Optional[int] = None
    type: str
    title: str
    message: str
    data: Optional[Dict] = None
    is_read: bool
    created_at: Optional[datetime] = None


# ============================================================================
# Ladder challenges
# ============================================================================


class CreateChallengeRequest(BaseModel):
    challenger_member_id: int
    challenged_member_id: int


class RespondChallengeRequest(BaseModel):
    accept: bool


class ChallengeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    league_id: int
    challenger_member_id: int
    challenged_member_id: int
    status: ChallengeStatus
    challenger_rank: int
    challenged_rank: int
    match_id: Optional[int] = None
    completion_deadline: Optional[datetime] = None
    winner_member_id: Optional[int] = None
    created_by: str
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
