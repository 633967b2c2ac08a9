"""
Actor dependencies for FastAPI routes.

Identity is established upstream; the API trusts the identity headers it
is given and passes them to the engine as an explicit Actor.
"""

from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic import ValidationError as PydanticValidationError

from league_engine.models.schemas import Actor, ActorRole


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """
    Dependency to build the acting identity from request headers.

    Raises:
        HTTPException: 401 without an actor id, 400 for an unknown role
    """
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id header is required",
        )
    try:
        return Actor(
            id=x_actor_id,
            display_name=x_actor_name or "",
            role=ActorRole(x_actor_role.lower()) if x_actor_role else ActorRole.PARTICIPANT,
        )
    except (ValueError, PydanticValidationError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown actor role: {x_actor_role}",
        )
