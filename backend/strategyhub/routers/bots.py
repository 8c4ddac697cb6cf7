"""Bot management router."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ..models import BotStatus, OrderSide, OrderStatus, OrderType
from ..services.auto_close import AutoCloseService
from ..services.bot_control import BotControlService
from ..services.errors import BotError
from ..services.executor_factory import ExecutorFactory
from ..services.state_machine import BotEvent
from .deps import (
    get_auto_close_service,
    get_bot_service,
    get_executor_factory,
    get_user_id,
    to_http_exception,
)

router = APIRouter()


# Pydantic schemas
class BotCreate(BaseModel):
    """Schema for creating a bot."""
    symbol: str = Field(..., min_length=1, max_length=50)
    exchange: str = Field(default="binance", min_length=1, max_length=50)
    name: Optional[str] = Field(default=None, max_length=255)
    exchange_account_id: Optional[str] = Field(default=None, max_length=36)
    config: Dict[str, Any] = Field(default_factory=dict)


class BotConfigUpdate(BaseModel):
    """Schema for replacing a bot's config."""
    config: Dict[str, Any]


class PreviewRequest(BaseModel):
    """Optional config changes to preview without saving them."""
    config_override: Optional[Dict[str, Any]] = None


class BotResponse(BaseModel):
    """Schema for bot response."""
    id: str
    user_id: str
    name: Optional[str]
    exchange: str
    exchange_account_id: Optional[str]
    symbol: str
    status: BotStatus
    status_version: int
    run_id: Optional[str]
    last_error: Optional[str]
    config_json: Dict[str, Any]
    config_revision: int
    auto_close_reference_price: Optional[str]
    auto_close_triggered_at: Optional[datetime]
    auto_close_reason: Optional[str]
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Schema for order response."""
    id: int
    bot_id: str
    exchange: str
    symbol: str
    client_order_id: str
    intent_seq: Optional[int]
    exchange_order_id: Optional[str]
    submitted_at: Optional[datetime]
    side: OrderSide
    type: OrderType
    status: OrderStatus
    price: Optional[str]
    amount: str
    filled_amount: str
    avg_fill_price: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class TradeResponse(BaseModel):
    """Schema for trade response."""
    id: int
    bot_id: str
    exchange: str
    symbol: str
    trade_id: str
    order_id: Optional[str]
    client_order_id: str
    side: OrderSide
    price: str
    amount: str
    fee: str
    fee_currency: Optional[str]
    timestamp: datetime

    class Config:
        from_attributes = True


class RuntimeResponse(BaseModel):
    """Schema for a bot's runtime view."""
    bot_id: str
    status: BotStatus
    status_version: int
    run_id: Optional[str]
    last_error: Optional[str]
    auto_close_reference_price: Optional[str]
    auto_close_triggered_at: Optional[datetime]
    order_count: int
    snapshot: Optional[Dict[str, Any]]
    snapshot_hash: Optional[str]
    reconciled_at: Optional[datetime]


class RiskCheckResponse(BaseModel):
    """Schema for an auto-close risk check."""
    triggered: bool
    previously_triggered: bool
    new_status: Optional[str]
    drawdown_percent: Optional[str]


# ============================================================================
# CRUD
# ============================================================================

@router.get("", response_model=List[BotResponse])
async def list_bots(
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """List the caller's bots, newest first."""
    return await service.list_bots(user_id)


@router.post("", response_model=BotResponse, status_code=status.HTTP_201_CREATED)
async def create_bot(
    bot_data: BotCreate,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """Create a new bot in DRAFT."""
    try:
        return await service.create_bot(
            user_id=user_id,
            symbol=bot_data.symbol,
            exchange=bot_data.exchange,
            config=bot_data.config,
            name=bot_data.name,
            exchange_account_id=bot_data.exchange_account_id,
        )
    except BotError as e:
        raise to_http_exception(e)


@router.get("/{bot_id}", response_model=BotResponse)
async def get_bot(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """Get a specific bot by ID."""
    try:
        return await service.get_bot(bot_id, user_id)
    except BotError as e:
        raise to_http_exception(e)


@router.put("/{bot_id}/config", response_model=BotResponse)
async def update_config(
    bot_id: str,
    update: BotConfigUpdate,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """Replace a bot's config. Bot must not be trading or stopping."""
    try:
        return await service.update_config(bot_id, user_id, update.config)
    except BotError as e:
        raise to_http_exception(e)


@router.delete("/{bot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_bot(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """Delete a bot. Only DRAFT, STOPPED and ERROR bots can be deleted."""
    try:
        await service.delete_bot(bot_id, user_id)
    except BotError as e:
        raise to_http_exception(e)


# ============================================================================
# Lifecycle
# ============================================================================

async def _transition(
    bot_id: str,
    user_id: str,
    event: BotEvent,
    service: BotControlService,
    factory: Optional[ExecutorFactory] = None,
):
    try:
        provider = None
        if factory is not None:
            provider = await factory.for_bot(await service.get_bot(bot_id, user_id))
        return await service.transition(bot_id, user_id, event, provider)
    except BotError as e:
        raise to_http_exception(e)


@router.post("/{bot_id}/start", response_model=BotResponse)
async def start_bot(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
    factory: ExecutorFactory = Depends(get_executor_factory),
):
    """Start a bot. The config is validated against live market data first."""
    return await _transition(bot_id, user_id, BotEvent.START, service, factory)


@router.post("/{bot_id}/pause", response_model=BotResponse)
async def pause_bot(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """Pause a bot. Open orders are left on the exchange."""
    return await _transition(bot_id, user_id, BotEvent.PAUSE, service)


@router.post("/{bot_id}/resume", response_model=BotResponse)
async def resume_bot(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
    factory: ExecutorFactory = Depends(get_executor_factory),
):
    """Resume a paused bot."""
    return await _transition(bot_id, user_id, BotEvent.RESUME, service, factory)


@router.post("/{bot_id}/stop", response_model=BotResponse)
async def stop_bot(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """Stop a bot. The worker cancels its open orders and completes the stop."""
    return await _transition(bot_id, user_id, BotEvent.STOP, service)


# ============================================================================
# Read models
# ============================================================================

@router.get("/{bot_id}/runtime", response_model=RuntimeResponse)
async def get_runtime(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    """Status, run id and latest reconcile snapshot."""
    try:
        return await service.get_runtime(bot_id, user_id)
    except BotError as e:
        raise to_http_exception(e)


@router.get("/{bot_id}/orders", response_model=List[OrderResponse])
async def list_orders(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    try:
        return await service.list_orders(bot_id, user_id)
    except BotError as e:
        raise to_http_exception(e)


@router.get("/{bot_id}/trades", response_model=List[TradeResponse])
async def list_trades(
    bot_id: str,
    limit: int = 100,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
):
    try:
        return await service.list_trades(bot_id, user_id, limit=limit)
    except BotError as e:
        raise to_http_exception(e)


@router.post("/{bot_id}/preview")
async def preview_bot(
    bot_id: str,
    request: Optional[PreviewRequest] = None,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
    factory: ExecutorFactory = Depends(get_executor_factory),
):
    """Trigger prices, order sizes and validation issues for the bot's config."""
    try:
        bot = await service.get_bot(bot_id, user_id)
        provider = await factory.for_bot(bot)
        override = request.config_override if request else None
        result = await service.preview(bot, provider, override)
    except BotError as e:
        raise to_http_exception(e)
    return result.to_dict()


@router.post("/{bot_id}/risk-check", response_model=RiskCheckResponse)
async def risk_check(
    bot_id: str,
    user_id: str = Depends(get_user_id),
    service: BotControlService = Depends(get_bot_service),
    auto_close: AutoCloseService = Depends(get_auto_close_service),
    factory: ExecutorFactory = Depends(get_executor_factory),
):
    """Run the auto-close drawdown check now."""
    try:
        bot = await service.get_bot(bot_id, user_id)
        provider = await factory.for_bot(bot)
        result = await auto_close.check_and_trigger(bot_id, provider, user_id=user_id)
    except BotError as e:
        raise to_http_exception(e)
    return RiskCheckResponse(
        triggered=result.triggered,
        previously_triggered=result.previously_triggered,
        new_status=result.new_status,
        drawdown_percent=result.drawdown_percent,
    )
