"""Per-account executor cache shared by the worker and the API."""

import logging
from collections import OrderedDict
from typing import Any, Optional, Callable, Dict, Tuple, Union

from ..models import Bot
from .config import ConfigService
from .exchange import CcxtExecutor
from .simulator import ExchangeSimulator, SimulatorExecutor

logger = logging.getLogger(__name__)

# Executors implement both the trading and the market data contract
Executor = Union[CcxtExecutor, SimulatorExecutor]
ExecutorBuilder = Callable[[str, Optional[str]], Executor]

DEFAULT_CACHE_SIZE = 32


class ExecutorFactory:
    """Hands out one executor per (exchange, exchange account).

    Least recently used executors are closed and evicted once the cache is
    full. In dry-run mode every exchange maps to a shared simulator.
    """

    def __init__(
        self,
        dry_run: bool = True,
        config_path: str = "config/exchanges.yaml",
        max_size: int = DEFAULT_CACHE_SIZE,
        builder: Optional[ExecutorBuilder] = None,
        exchange_options: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        """Initialize the factory.

        Args:
            dry_run: Route every exchange to an in-process simulator
            config_path: Exchanges YAML file for live executors
            max_size: Number of executors kept before the oldest is closed
            builder: Replaces the default executor construction
            exchange_options: Per exchange id CcxtExecutor keyword overrides
                (api_key, api_secret, sandbox, allow_mainnet)
        """
        self.dry_run = dry_run
        self.config_path = config_path
        self.max_size = max_size
        self._builder = builder or self._default_builder
        self.exchange_options = exchange_options or {}
        self._cache: "OrderedDict[Tuple[str, Optional[str]], Executor]" = OrderedDict()
        self._simulators: Dict[str, ExchangeSimulator] = {}

    @classmethod
    def from_config(cls, config: ConfigService) -> "ExecutorFactory":
        """Build the factory from the `exchange` config section."""
        exchange_id = config.get("exchange.exchange_id", "binance")
        options = {
            "api_key": config.get("exchange.api_key"),
            "api_secret": config.get("exchange.api_secret"),
            "sandbox": config.get("exchange.sandbox_mode"),
            "allow_mainnet": config.get("exchange.allow_mainnet"),
        }
        return cls(
            dry_run=config.get("exchange.dry_run", True),
            config_path=config.get("exchange.config_path", "config/exchanges.yaml"),
            exchange_options={exchange_id: {k: v for k, v in options.items() if v is not None}},
        )

    def _default_builder(self, exchange: str, account_id: Optional[str]) -> Executor:
        if self.dry_run:
            return SimulatorExecutor(self.simulator_for(exchange))
        return CcxtExecutor(
            exchange_id=exchange,
            config_path=self.config_path,
            **self.exchange_options.get(exchange, {}),
        )

    def simulator_for(self, exchange: str) -> ExchangeSimulator:
        if exchange not in self._simulators:
            self._simulators[exchange] = ExchangeSimulator(exchange=exchange)
        return self._simulators[exchange]

    async def for_bot(self, bot: Bot) -> Executor:
        """Executor for a bot's exchange account."""
        key = (bot.exchange, bot.exchange_account_id)

        executor = self._cache.get(key)
        if executor is not None:
            self._cache.move_to_end(key)
            return executor

        executor = self._builder(bot.exchange, bot.exchange_account_id)
        self._cache[key] = executor

        while len(self._cache) > self.max_size:
            evicted_key, evicted = self._cache.popitem(last=False)
            logger.debug(f"Evicting executor for {evicted_key}")
            await evicted.close()

        return executor

    async def close(self) -> None:
        """Close every cached executor."""
        for key, executor in list(self._cache.items()):
            try:
                await executor.close()
            except Exception as e:
                logger.error(f"Failed to close executor for {key}: {e}")
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
