# Business Logic Services

from .errors import (
    ExchangeErrorCode,
    ExchangeError,
    RateLimitError,
    ExchangeTimeoutError,
    ExchangeUnavailableError,
    AuthError,
    BadRequestError,
    InsufficientFundsError,
    OrderNotFoundError,
    DuplicateOrderError,
    BotErrorCode,
    BotError,
)
from .idempotency import (
    ORDER_PREFIX,
    generate_client_order_id,
    is_our_order,
    compute_state_hash,
)
from .state_machine import (
    BotEvent,
    validate_transition,
    can_modify_config,
    has_trigger_condition,
)
from .exchange import (
    ExchangeExecutor,
    MarketDataProvider,
    CcxtExecutor,
    RemoteOrder,
    RemoteTrade,
    CreateOrderParams,
    CreateOrderResult,
    Balance,
    Ticker,
    MarketInfo,
)
from .simulator import (
    FakeClock,
    ExchangeSimulator,
    SimulatorExecutor,
)
from .executor_factory import ExecutorFactory
from .preview import (
    GridConfig,
    PreviewResult,
    calculate_preview,
)
from .bot_control import (
    BotControlService,
    apply_event,
    compare_and_set_status,
)
from .kill_switch import (
    KillSwitchService,
    KillSwitchState,
    KillSwitchEnableResult,
)
from .auto_close import (
    AutoCloseService,
    AutoCloseResult,
    check_auto_close,
)
from .trigger_order import (
    TriggerOrderProcessor,
    TickAction,
)
from .reconcile import (
    Reconciler,
    ReconcileResult,
)
from .stopping import (
    StoppingProcessor,
    StoppingResult,
)
from .worker import Worker
from .config import (
    ConfigService,
    config_service,
    ConfigValidationException,
    ConfigValidationError,
    WorkerSettings,
)

__all__ = [
    # Errors
    "ExchangeErrorCode",
    "ExchangeError",
    "RateLimitError",
    "ExchangeTimeoutError",
    "ExchangeUnavailableError",
    "AuthError",
    "BadRequestError",
    "InsufficientFundsError",
    "OrderNotFoundError",
    "DuplicateOrderError",
    "BotErrorCode",
    "BotError",
    # Idempotency
    "ORDER_PREFIX",
    "generate_client_order_id",
    "is_our_order",
    "compute_state_hash",
    # State machine
    "BotEvent",
    "validate_transition",
    "can_modify_config",
    "has_trigger_condition",
    # Exchange
    "ExchangeExecutor",
    "MarketDataProvider",
    "CcxtExecutor",
    "RemoteOrder",
    "RemoteTrade",
    "CreateOrderParams",
    "CreateOrderResult",
    "Balance",
    "Ticker",
    "MarketInfo",
    "FakeClock",
    "ExchangeSimulator",
    "SimulatorExecutor",
    "ExecutorFactory",
    # Preview
    "GridConfig",
    "PreviewResult",
    "calculate_preview",
    # Bot control
    "BotControlService",
    "apply_event",
    "compare_and_set_status",
    "KillSwitchService",
    "KillSwitchState",
    "KillSwitchEnableResult",
    "AutoCloseService",
    "AutoCloseResult",
    "check_auto_close",
    # Worker
    "TriggerOrderProcessor",
    "TickAction",
    "Reconciler",
    "ReconcileResult",
    "StoppingProcessor",
    "StoppingResult",
    "Worker",
    # Config
    "ConfigService",
    "config_service",
    "ConfigValidationException",
    "ConfigValidationError",
    "WorkerSettings",
]
