"""Pytest configuration and fixtures."""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from strategyhub.main import app
from strategyhub.models import Base, Bot, BotStatus, get_session_maker
from strategyhub.services.bot_control import BotControlService
from strategyhub.services.exchange import MarketInfo
from strategyhub.services.executor_factory import ExecutorFactory
from strategyhub.services.simulator import ExchangeSimulator, FakeClock, SimulatorExecutor


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

USER_ID = "user-1"
SYMBOL = "BTC/USDT"
START_MS = 1_700_000_000_000


def grid_config(**overrides):
    """Percent grid around the current price: buy 2% below, sell 2% above, 100 USDT per leg."""
    config = {
        "trigger": {
            "gridType": "percent",
            "basePriceType": "current",
            "riseSell": "2",
            "fallBuy": "2",
        },
        "order": {"orderType": "limit"},
        "sizing": {
            "amountMode": "amount",
            "gridSymmetric": True,
            "symmetric": {"orderQuantity": "100"},
        },
    }
    for section, values in overrides.items():
        config[section] = {**config.get(section, {}), **values}
    return config


@pytest.fixture(scope="function")
async def session_maker():
    """Fresh in-memory database per test, shared by every session."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def test_db(session_maker):
    """Session for direct assertions against the database."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(START_MS)


@pytest.fixture
def simulator(clock):
    """Simulated exchange with BTC/USDT at 100 and funded balances."""
    sim = ExchangeSimulator(exchange="binance", clock=clock)
    sim.set_ticker(SYMBOL, "100")
    sim.set_market(MarketInfo(
        symbol=SYMBOL,
        price_precision=2,
        amount_precision=8,
        min_amount="0.0001",
        min_notional="5",
    ))
    sim.set_balance("USDT", "10000")
    sim.set_balance("BTC", "10")
    return sim


@pytest.fixture
def executor(simulator):
    return SimulatorExecutor(simulator)


@pytest.fixture
def executor_factory(executor):
    return ExecutorFactory(dry_run=True, builder=lambda exchange, account_id: executor)


@pytest.fixture
def bot_service(session_maker):
    return BotControlService(session_maker)


@pytest.fixture
def make_bot(session_maker):
    """Insert a bot directly in a given status."""

    async def _make_bot(
        status: BotStatus = BotStatus.DRAFT,
        config=None,
        user_id: str = USER_ID,
        symbol: str = SYMBOL,
        **values,
    ) -> Bot:
        service = BotControlService(session_maker)
        await service.ensure_user(user_id)
        async with session_maker() as session:
            bot = Bot(
                user_id=user_id,
                symbol=symbol,
                exchange="binance",
                status=status,
                status_version=values.pop("status_version", 0),
                config_json=grid_config() if config is None else config,
                **values,
            )
            session.add(bot)
            await session.commit()
            await session.refresh(bot)
            return bot

    return _make_bot


@pytest.fixture(scope="function")
async def client(session_maker, executor_factory):
    """Create test client with test database and a simulated exchange."""
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.state.executor_factory = executor_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-User-Id": USER_ID}
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
