"""Tests for bot lifecycle commands, config edits and CAS writes."""

import pytest

from strategyhub.models import Bot, BotStatus
from strategyhub.services.bot_control import apply_event, compare_and_set_status, deep_merge, load_bot
from strategyhub.services.errors import BotError, BotErrorCode
from strategyhub.services.kill_switch import KillSwitchService
from strategyhub.services.state_machine import BotEvent

from conftest import USER_ID, grid_config


def untriggered_config():
    config = grid_config()
    del config["trigger"]["basePriceType"]
    return config


async def expect_error(code, coro):
    with pytest.raises(BotError) as exc_info:
        await coro
    assert exc_info.value.code == code
    return exc_info.value


class TestCrud:
    """Create, read, update config and delete."""

    @pytest.mark.asyncio
    async def test_create_bot(self, bot_service):
        bot = await bot_service.create_bot(USER_ID, "BTC/USDT", config=grid_config(), name="grid")
        assert bot.status == BotStatus.DRAFT
        assert bot.status_version == 0
        assert bot.config_revision == 1
        assert len(bot.id) == 36
        assert bot.config_json["trigger"]["riseSell"] == "2"

    @pytest.mark.asyncio
    async def test_create_bot_rejects_bad_config(self, bot_service):
        await expect_error(
            BotErrorCode.CONFIG_VALIDATION_ERROR,
            bot_service.create_bot(USER_ID, "BTC/USDT", config="{not json"),
        )

    @pytest.mark.asyncio
    async def test_get_bot_checks_owner(self, bot_service, make_bot):
        bot = await make_bot()
        assert (await bot_service.get_bot(bot.id, USER_ID)).id == bot.id
        await expect_error(BotErrorCode.BOT_NOT_FOUND, bot_service.get_bot(bot.id, "someone-else"))

    @pytest.mark.asyncio
    async def test_list_bots_scoped_to_user(self, bot_service, make_bot):
        await make_bot()
        await make_bot()
        await make_bot(user_id="user-2")
        assert len(await bot_service.list_bots(USER_ID)) == 2

    @pytest.mark.asyncio
    async def test_update_config_bumps_revision_only(self, bot_service, make_bot):
        bot = await make_bot(status=BotStatus.PAUSED)
        updated = await bot_service.update_config(bot.id, USER_ID, grid_config(trigger={"riseSell": "3"}))
        assert updated.config_revision == 2
        assert updated.status_version == 0
        assert updated.config_json["trigger"]["riseSell"] == "3"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [BotStatus.RUNNING, BotStatus.WAITING_TRIGGER, BotStatus.STOPPING])
    async def test_update_config_locked_while_trading(self, bot_service, make_bot, status):
        bot = await make_bot(status=status)
        await expect_error(BotErrorCode.CONFIG_LOCKED, bot_service.update_config(bot.id, USER_ID, grid_config()))

    @pytest.mark.asyncio
    async def test_delete_bot(self, bot_service, make_bot):
        bot = await make_bot(status=BotStatus.STOPPED)
        await bot_service.delete_bot(bot.id, USER_ID)
        await expect_error(BotErrorCode.BOT_NOT_FOUND, bot_service.get_bot(bot.id))

    @pytest.mark.asyncio
    async def test_delete_running_bot_refused(self, bot_service, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING)
        await expect_error(BotErrorCode.INVALID_STATE_TRANSITION, bot_service.delete_bot(bot.id, USER_ID))


class TestTransitions:
    """User lifecycle commands."""

    @pytest.mark.asyncio
    async def test_start_with_trigger_waits(self, bot_service, make_bot, executor):
        bot = await make_bot()
        started = await bot_service.start(bot.id, USER_ID, executor)

        assert started.status == BotStatus.WAITING_TRIGGER
        assert started.status_version == 1
        assert started.run_id is not None
        assert started.started_at is not None
        assert started.auto_close_reference_price == "100.00"

    @pytest.mark.asyncio
    async def test_start_without_trigger_runs(self, bot_service, make_bot, executor):
        bot = await make_bot(config=untriggered_config())
        started = await bot_service.start(bot.id, USER_ID, executor)
        assert started.status == BotStatus.RUNNING

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, bot_service, make_bot, executor):
        bot = await make_bot()
        first = await bot_service.start(bot.id, USER_ID, executor)
        again = await bot_service.start(bot.id, USER_ID, executor)
        assert again.status_version == first.status_version
        assert again.run_id == first.run_id

    @pytest.mark.asyncio
    async def test_start_clears_last_error(self, bot_service, make_bot, executor):
        bot = await make_bot(status=BotStatus.PAUSED, last_error="old failure")
        resumed = await bot_service.resume(bot.id, USER_ID, executor)
        assert resumed.last_error is None

    @pytest.mark.asyncio
    async def test_start_rejects_invalid_config(self, bot_service, make_bot, executor):
        bot = await make_bot(config=grid_config(sizing={"symmetric": {"orderQuantity": "1"}}))
        error = await expect_error(
            BotErrorCode.CONFIG_VALIDATION_ERROR, bot_service.start(bot.id, USER_ID, executor)
        )
        assert "BELOW_MIN_NOTIONAL" in error.message
        assert (await bot_service.get_bot(bot.id)).status == BotStatus.DRAFT

    @pytest.mark.asyncio
    async def test_start_exchange_unavailable(self, bot_service, make_bot, executor, simulator):
        bot = await make_bot()
        simulator.inject_error("get_ticker", "timeout")
        await expect_error(BotErrorCode.EXCHANGE_UNAVAILABLE, bot_service.start(bot.id, USER_ID, executor))

    @pytest.mark.asyncio
    async def test_start_from_error_is_invalid(self, bot_service, make_bot, executor):
        bot = await make_bot(status=BotStatus.ERROR)
        await expect_error(
            BotErrorCode.INVALID_STATE_TRANSITION, bot_service.start(bot.id, USER_ID, executor)
        )

    @pytest.mark.asyncio
    async def test_pause_resume_stop(self, bot_service, make_bot, executor):
        bot = await make_bot()
        started = await bot_service.start(bot.id, USER_ID, executor)

        paused = await bot_service.pause(bot.id, USER_ID)
        assert paused.status == BotStatus.PAUSED
        assert paused.status_version == 2

        resumed = await bot_service.resume(bot.id, USER_ID, executor)
        assert resumed.status == BotStatus.WAITING_TRIGGER
        assert resumed.run_id != started.run_id

        stopping = await bot_service.stop(bot.id, USER_ID)
        assert stopping.status == BotStatus.STOPPING
        assert stopping.run_id is None
        assert stopping.status_version == 4

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, bot_service, make_bot):
        bot = await make_bot(status=BotStatus.STOPPED)
        stopped = await bot_service.stop(bot.id, USER_ID)
        assert stopped.status == BotStatus.STOPPED
        assert stopped.status_version == 0

    @pytest.mark.asyncio
    async def test_pause_draft_is_invalid(self, bot_service, make_bot):
        bot = await make_bot()
        await expect_error(BotErrorCode.INVALID_STATE_TRANSITION, bot_service.pause(bot.id, USER_ID))

    @pytest.mark.asyncio
    async def test_kill_switch_blocks_start_but_not_stop(self, session_maker, bot_service, make_bot, executor):
        draft = await make_bot()
        paused = await make_bot(status=BotStatus.PAUSED)
        await KillSwitchService(session_maker).enable(USER_ID)

        await expect_error(BotErrorCode.KILL_SWITCH_LOCKED, bot_service.start(draft.id, USER_ID, executor))
        await expect_error(BotErrorCode.KILL_SWITCH_LOCKED, bot_service.resume(paused.id, USER_ID, executor))
        assert (await bot_service.stop(paused.id, USER_ID)).status == BotStatus.STOPPING

    @pytest.mark.asyncio
    async def test_missing_provider(self, bot_service, make_bot):
        bot = await make_bot()
        await expect_error(
            BotErrorCode.EXCHANGE_UNAVAILABLE, bot_service.transition(bot.id, USER_ID, BotEvent.START)
        )


class TestSystemEvents:
    """CAS writes used by the worker."""

    @pytest.mark.asyncio
    async def test_compare_and_set_status(self, session_maker, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING)
        async with session_maker() as session:
            async with session.begin():
                assert await compare_and_set_status(session, bot.id, 0, BotStatus.PAUSED)
                assert not await compare_and_set_status(session, bot.id, 0, BotStatus.STOPPING)
            current = await load_bot(session, bot.id)
        assert current.status == BotStatus.PAUSED
        assert current.status_version == 1

    @pytest.mark.asyncio
    async def test_apply_event_with_stale_version_loses(self, session_maker, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING)
        async with session_maker() as session:
            async with session.begin():
                await compare_and_set_status(session, bot.id, 0, BotStatus.RUNNING)

        async with session_maker() as session:
            async with session.begin():
                assert not await apply_event(session, bot, BotEvent.STOP)

    @pytest.mark.asyncio
    async def test_apply_event_invalid(self, session_maker, make_bot):
        bot = await make_bot(status=BotStatus.DRAFT)
        async with session_maker() as session:
            with pytest.raises(BotError):
                await apply_event(session, bot, BotEvent.TRIGGER_HIT)

    @pytest.mark.asyncio
    async def test_mark_error(self, bot_service, make_bot):
        bot = await make_bot(status=BotStatus.RUNNING)
        assert await bot_service.mark_error(bot.id, BotErrorCode.ORDER_SUBMIT_FAILED, "boom")

        current = await bot_service.get_bot(bot.id)
        assert current.status == BotStatus.ERROR
        assert current.last_error == "ORDER_SUBMIT_FAILED: boom"

        assert not await bot_service.mark_error(bot.id, "OTHER", "again")
        assert not await bot_service.mark_error("missing-bot-id", "OTHER", "nope")


class TestReadModels:

    @pytest.mark.asyncio
    async def test_runtime_without_snapshot(self, bot_service, make_bot):
        bot = await make_bot()
        runtime = await bot_service.get_runtime(bot.id, USER_ID)
        assert runtime["status"] == "DRAFT"
        assert runtime["snapshot"] is None
        assert runtime["order_count"] == 0

    @pytest.mark.asyncio
    async def test_preview_with_override(self, bot_service, make_bot, executor):
        bot = await make_bot()
        result = await bot_service.preview(bot, executor, {"trigger": {"riseSell": "5"}})
        assert result.sell_trigger_price == "105.00"
        assert result.buy_trigger_price == "98.00"

    def test_deep_merge(self):
        merged = deep_merge(
            {"a": {"b": 1, "c": 2}, "d": 3},
            {"a": {"b": 10}, "d": None, "__proto__": {"x": 1}},
        )
        assert merged == {"a": {"b": 10, "c": 2}, "d": 3}

    @pytest.mark.asyncio
    async def test_bot_model_defaults(self, test_db, make_bot):
        bot = await make_bot()
        stored = await test_db.get(Bot, bot.id)
        assert stored.exchange == "binance"
        assert stored.run_id is None
