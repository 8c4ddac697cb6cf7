"""Shared router dependencies: caller identity, services and error mapping."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import get_session_maker
from ..services.auto_close import AutoCloseService
from ..services.bot_control import BotControlService
from ..services.errors import BotError
from ..services.executor_factory import ExecutorFactory
from ..services.kill_switch import KillSwitchService


def to_http_exception(error: BotError) -> HTTPException:
    """Translate a bot-domain error into its HTTP response."""
    return HTTPException(status_code=error.http_status, detail=error.to_dict())


def get_bot_service(session_maker: async_sessionmaker = Depends(get_session_maker)) -> BotControlService:
    return BotControlService(session_maker)


def get_kill_switch_service(session_maker: async_sessionmaker = Depends(get_session_maker)) -> KillSwitchService:
    return KillSwitchService(session_maker)


def get_auto_close_service(session_maker: async_sessionmaker = Depends(get_session_maker)) -> AutoCloseService:
    return AutoCloseService(session_maker)


def get_executor_factory(request: Request) -> ExecutorFactory:
    """Executor cache created at startup and shared with the worker."""
    return request.app.state.executor_factory


async def get_user_id(
    x_user_id: Optional[str] = Header(default=None),
    service: BotControlService = Depends(get_bot_service),
) -> str:
    """Caller identity from the X-User-Id header; the user row is created on first use."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Missing X-User-Id header"},
        )
    user_id = x_user_id.strip()
    await service.ensure_user(user_id)
    return user_id
