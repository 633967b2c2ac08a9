"""
League service layer.

Creates leagues, registers and withdraws members, manages courts and edits
league settings. Competition settings lock once matches exist; tiebreakers
and the score verification policy stay editable.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import (
    AbsencePolicy,
    Court,
    League,
    LeagueFormat,
    Match,
    Member,
    MemberStatus,
)
from league_engine.models.schemas import Actor, ActorRole
from league_engine.services import stats_queue
from league_engine.services.errors import NotFoundError, StateConflictError, ValidationError
from league_engine.services.locking import get_league
from league_engine.services.score_rules import GameRules
from league_engine.services.standings_service import parse_tiebreakers
from league_engine.utils.constants import MAX_BOX_SIZE, MIN_BOX_SIZE
from league_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Settings an organizer may change at any time
ALWAYS_EDITABLE_SETTINGS = {
    "tiebreakers",
    "required_confirmations",
    "allow_disputes",
    "auto_confirm",
    "auto_finalize_hours",
    "absence_policy",
    "challenge_range",
}

# Settings that shape fixtures or results; frozen once matches exist
LOCKED_SETTINGS = {
    "name",
    "rating_governed",
    "points_to_win",
    "win_by",
    "best_of",
    "cap_at",
    "points_for_win",
    "points_for_loss",
    "points_for_forfeit_loss",
    "rounds",
    "box_size",
    "promotion_count",
    "relegation_count",
    "total_weeks",
}


# --- Actor checks ---


def is_organizer(league: League, actor: Actor) -> bool:
    """True if the actor acts as organizer and is listed on the league."""
    return actor.role == ActorRole.ORGANIZER and league.is_organizer(actor.id)


def require_organizer(league: League, actor: Actor) -> None:
    if not is_organizer(league, actor):
        raise ValidationError(f"{actor.name} is not an organizer of league {league.id}")


# --- Settings validation ---


def validate_settings(settings: Dict) -> None:
    """
    Check a complete settings dict for internal consistency.

    Raises:
        ValidationError: On any inconsistent value
    """
    GameRules(
        points_to_win=settings["points_to_win"],
        win_by=settings["win_by"],
        best_of=settings["best_of"],
        cap_at=settings.get("cap_at"),
    )
    parse_tiebreakers(settings.get("tiebreakers") or [])
    if settings["required_confirmations"] < 0:
        raise ValidationError("required_confirmations cannot be negative")
    if settings["auto_finalize_hours"] < 0:
        raise ValidationError("auto_finalize_hours cannot be negative")
    if settings["rounds"] < 1:
        raise ValidationError("rounds must be at least 1")
    if not MIN_BOX_SIZE <= settings["box_size"] <= MAX_BOX_SIZE:
        raise ValidationError(f"box_size must be between {MIN_BOX_SIZE} and {MAX_BOX_SIZE}")
    if settings["promotion_count"] < 0 or settings["relegation_count"] < 0:
        raise ValidationError("promotion and relegation counts cannot be negative")
    if settings["promotion_count"] + settings["relegation_count"] > settings["box_size"]:
        raise ValidationError("promotion_count + relegation_count cannot exceed box_size")
    if settings["total_weeks"] < 1:
        raise ValidationError("total_weeks must be at least 1")
    if settings["challenge_range"] < 1:
        raise ValidationError("challenge_range must be at least 1")
    try:
        AbsencePolicy(settings["absence_policy"])
    except ValueError:
        raise ValidationError(f"Unknown absence policy: {settings['absence_policy']}")


def _current_settings(league: League) -> Dict:
    return {
        key: getattr(league, key)
        for key in ALWAYS_EDITABLE_SETTINGS | LOCKED_SETTINGS
    }


# --- Leagues ---


async def create_league(session: AsyncSession, actor: Actor, name: str, format: LeagueFormat, **settings) -> League:
    """
    Create a league. The creating organizer is always listed as an organizer.

    Args:
        session: Database session
        actor: Creating identity; must act as organizer
        name: League name
        format: LeagueFormat (or its value)
        **settings: Any League setting column

    Returns:
        The created League
    """
    if actor.role != ActorRole.ORGANIZER:
        raise ValidationError("Only organizers can create leagues")
    try:
        league_format = LeagueFormat(format)
    except ValueError:
        raise ValidationError(f"Unknown league format: {format}")

    organizer_ids = list(dict.fromkeys([actor.id] + list(settings.pop("organizer_ids", None) or [])))
    if settings.get("tiebreakers") is None:
        settings.pop("tiebreakers", None)

    league = League(
        name=name,
        format=league_format,
        organizer_ids=organizer_ids,
        tiebreakers=list(settings.pop("tiebreakers", [])),
        created_by=actor.id,
    )
    for key, value in settings.items():
        if key not in ALWAYS_EDITABLE_SETTINGS | LOCKED_SETTINGS:
            raise ValidationError(f"Unknown league setting: {key}")
        setattr(league, key, value)

    # Column defaults only apply at INSERT time
    for column in League.__table__.columns:
        if getattr(league, column.key) is None and column.default is not None and column.default.is_scalar:
            setattr(league, column.key, column.default.arg)

    validate_settings(_current_settings(league))
    session.add(league)
    await session.commit()
    await session.refresh(league)
    logger.info(f"League {league.id} ({league_format.value}) created by {actor.id}")
    return league


async def count_matches(session: AsyncSession, league_id: int) -> int:
    result = await session.execute(
        select(func.count(Match.id)).where(Match.league_id == league_id)
    )
    return result.scalar() or 0


async def update_league_settings(session: AsyncSession, league_id: int, actor: Actor, **changes) -> League:
    """
    Update league settings.

    Raises:
        ValidationError: If the actor is not an organizer or a value is invalid
        StateConflictError: If a locked setting changes after matches exist
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)

    changes = {k: v for k, v in changes.items() if v is not None or k == "cap_at"}
    unknown = set(changes) - ALWAYS_EDITABLE_SETTINGS - LOCKED_SETTINGS
    if unknown:
        raise ValidationError(f"Unknown league settings: {sorted(unknown)}")

    changed = {k: v for k, v in changes.items() if getattr(league, k) != v}
    locked = sorted(set(changed) & LOCKED_SETTINGS)
    if locked and await count_matches(session, league_id) > 0:
        raise StateConflictError(f"Cannot change {locked} once matches exist")

    updated = _current_settings(league)
    updated.update(changed)
    validate_settings(updated)

    for key, value in changed.items():
        setattr(league, key, list(value) if isinstance(value, list) else value)
    await session.commit()
    await session.refresh(league)
    logger.info(f"League {league_id} settings updated by {actor.id}: {sorted(changed)}")

    if "tiebreakers" in changed:
        await stats_queue.request_recalculation(session, league_id)
    return league


# --- Members ---


async def get_member(session: AsyncSession, league_id: int, member_id: int) -> Member:
    member = await session.get(Member, member_id)
    if member is None or member.league_id != league_id:
        raise NotFoundError(f"Member {member_id} not found in league {league_id}")
    return member


async def list_members(session: AsyncSession, league_id: int, include_withdrawn: bool = False) -> List[Member]:
    query = select(Member).where(Member.league_id == league_id)
    if not include_withdrawn:
        query = query.where(Member.status == MemberStatus.ACTIVE)
    result = await session.execute(query.order_by(Member.id))
    return list(result.scalars().all())


async def add_member(
    session: AsyncSession,
    league_id: int,
    actor: Actor,
    display_name: str,
    player_ids: List[str],
    rating: Optional[float] = None,
) -> Member:
    """
    Register a member. Organizers may register anyone; players may register themselves.

    Raises:
        ValidationError: On a bad roster or a player already active in the league
    """
    league = await get_league(session, league_id)
    player_ids = [p for p in dict.fromkeys(player_ids or []) if p]
    if not 1 <= len(player_ids) <= 2:
        raise ValidationError("A member needs one or two player ids")
    if not is_organizer(league, actor) and actor.id not in player_ids:
        raise ValidationError("Players can only register themselves")

    for existing in await list_members(session, league_id):
        taken = set(existing.player_ids or []) & set(player_ids)
        if taken:
            raise ValidationError(f"Players {sorted(taken)} are already registered in league {league_id}")

    member = Member(
        league_id=league_id,
        display_name=display_name,
        player_ids=player_ids,
        rating=rating,
        status=MemberStatus.ACTIVE,
        recent_results=[],
    )
    session.add(member)
    await session.commit()
    await session.refresh(member)
    logger.info(f"Member {member.id} ({display_name}) joined league {league_id}")
    return member


async def withdraw_member(session: AsyncSession, league_id: int, member_id: int, actor: Actor) -> Member:
    """Soft-withdraw a member; their played matches keep counting."""
    league = await get_league(session, league_id)
    member = await get_member(session, league_id, member_id)
    if not is_organizer(league, actor) and actor.id not in (member.player_ids or []):
        raise ValidationError("Only organizers or the member can withdraw a member")
    if member.status == MemberStatus.WITHDRAWN:
        raise StateConflictError(f"Member {member_id} has already withdrawn")
    if member.status == MemberStatus.SUBSTITUTE:
        raise ValidationError(f"Member {member_id} is a substitute; remove them from their week instead")

    member.status = MemberStatus.WITHDRAWN
    member.withdrawn_at = utcnow()
    member.rank = None
    await session.commit()
    logger.info(f"Member {member_id} withdrew from league {league_id}")

    await stats_queue.request_recalculation(session, league_id)
    return member


async def get_standings(session: AsyncSession, league_id: int) -> List[Member]:
    """Active members in stored rank order; unranked members follow in join order."""
    await get_league(session, league_id)
    members = await list_members(session, league_id)
    return sorted(members, key=lambda m: (m.rank is None, m.rank or 0, m.id))


# --- Courts ---


async def add_court(session: AsyncSession, league_id: int, actor: Actor, name: str, sort_order: int = 0) -> Court:
    league = await get_league(session, league_id)
    require_organizer(league, actor)

    result = await session.execute(
        select(Court).where(Court.league_id == league_id, Court.name == name)
    )
    if result.scalar_one_or_none():
        raise ValidationError(f"Court '{name}' already exists in league {league_id}")

    court = Court(league_id=league_id, name=name, sort_order=sort_order, is_active=True)
    session.add(court)
    await session.commit()
    await session.refresh(court)
    return court


async def set_court_active(session: AsyncSession, league_id: int, court_id: int, actor: Actor, is_active: bool) -> Court:
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    court = await session.get(Court, court_id)
    if court is None or court.league_id != league_id:
        raise NotFoundError(f"Court {court_id} not found in league {league_id}")
    court.is_active = is_active
    await session.commit()
    return court


async def list_courts(session: AsyncSession, league_id: int, active_only: bool = False) -> List[Court]:
    query = select(Court).where(Court.league_id == league_id)
    if active_only:
        query = query.where(Court.is_active.is_(True))
    result = await session.execute(query.order_by(Court.sort_order, Court.id))
    return list(result.scalars().all())
