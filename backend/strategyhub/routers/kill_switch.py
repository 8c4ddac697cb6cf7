"""Kill switch router."""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..services.kill_switch import KillSwitchService, DEFAULT_REASON
from .deps import get_kill_switch_service, get_user_id

router = APIRouter()


class KillSwitchEnable(BaseModel):
    """Schema for enabling the kill switch."""
    reason: Optional[str] = Field(default=None, max_length=255)


class KillSwitchResponse(BaseModel):
    """Schema for kill switch state."""
    enabled: bool
    enabled_at: Optional[datetime] = None
    reason: Optional[str] = None
    affected_bots: Optional[int] = None


@router.get("", response_model=KillSwitchResponse)
async def get_kill_switch(
    user_id: str = Depends(get_user_id),
    service: KillSwitchService = Depends(get_kill_switch_service),
):
    """Current kill switch state for the caller."""
    state = await service.get_state(user_id)
    return KillSwitchResponse(enabled=state.enabled, enabled_at=state.enabled_at, reason=state.reason)


@router.post("/enable", response_model=KillSwitchResponse)
async def enable_kill_switch(
    request: Optional[KillSwitchEnable] = None,
    user_id: str = Depends(get_user_id),
    service: KillSwitchService = Depends(get_kill_switch_service),
):
    """Enable the kill switch and stop every trading bot of the caller."""
    reason = (request.reason if request else None) or DEFAULT_REASON
    result = await service.enable(user_id, reason)
    return KillSwitchResponse(
        enabled=result.enabled,
        enabled_at=result.enabled_at,
        reason=result.reason,
        affected_bots=result.affected_bots,
    )


@router.post("/disable", response_model=KillSwitchResponse)
async def disable_kill_switch(
    user_id: str = Depends(get_user_id),
    service: KillSwitchService = Depends(get_kill_switch_service),
):
    """Disable the kill switch. Stopped bots stay stopped."""
    state = await service.disable(user_id)
    return KillSwitchResponse(enabled=state.enabled, enabled_at=state.enabled_at, reason=state.reason)
