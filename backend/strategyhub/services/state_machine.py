"""Bot lifecycle state machine.

Pure transition logic: no I/O and no persistence. Writers combine the result
with a compare-and-swap on Bot.status_version (see bot_control).
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple, Union

from ..models import BotStatus

logger = logging.getLogger(__name__)


class BotEvent(str, Enum):
    """Events that drive bot status changes."""
    START = "START"
    TRIGGER_HIT = "TRIGGER_HIT"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    STOP = "STOP"
    RISK_TRIGGERED = "RISK_TRIGGERED"
    KILL_SWITCH = "KILL_SWITCH"
    FATAL_ERROR = "FATAL_ERROR"
    STOPPED_COMPLETE = "STOPPED_COMPLETE"


# Placeholder target resolved from config by a TriggerPolicy
RUNNING_OR_WAITING = "RUNNING_OR_WAITING"

Target = Union[BotStatus, str]

TRANSITIONS: Dict[Tuple[BotStatus, BotEvent], Target] = {
    (BotStatus.DRAFT, BotEvent.START): RUNNING_OR_WAITING,
    (BotStatus.WAITING_TRIGGER, BotEvent.TRIGGER_HIT): BotStatus.RUNNING,
    (BotStatus.WAITING_TRIGGER, BotEvent.PAUSE): BotStatus.PAUSED,
    (BotStatus.WAITING_TRIGGER, BotEvent.STOP): BotStatus.STOPPING,
    (BotStatus.RUNNING, BotEvent.PAUSE): BotStatus.PAUSED,
    (BotStatus.RUNNING, BotEvent.STOP): BotStatus.STOPPING,
    (BotStatus.PAUSED, BotEvent.RESUME): RUNNING_OR_WAITING,
    (BotStatus.PAUSED, BotEvent.STOP): BotStatus.STOPPING,
    (BotStatus.STOPPING, BotEvent.STOPPED_COMPLETE): BotStatus.STOPPED,
}

# Events accepted from any status
GLOBAL_TRANSITIONS: Dict[BotEvent, BotStatus] = {
    BotEvent.RISK_TRIGGERED: BotStatus.STOPPING,
    BotEvent.KILL_SWITCH: BotStatus.STOPPING,
    BotEvent.FATAL_ERROR: BotStatus.ERROR,
}

# "Already there" statuses: the event succeeds without a status change
IDEMPOTENT_TARGETS: Dict[BotEvent, FrozenSet[BotStatus]] = {
    BotEvent.START: frozenset({BotStatus.RUNNING, BotStatus.WAITING_TRIGGER}),
    BotEvent.RESUME: frozenset({BotStatus.RUNNING, BotStatus.WAITING_TRIGGER}),
    BotEvent.PAUSE: frozenset({BotStatus.PAUSED}),
    BotEvent.STOP: frozenset({BotStatus.STOPPING, BotStatus.STOPPED}),
}

CONFIG_MUTABLE_STATUSES = frozenset({
    BotStatus.DRAFT,
    BotStatus.PAUSED,
    BotStatus.STOPPED,
    BotStatus.ERROR,
})

# Events gated by the user's kill switch
KILL_SWITCH_GUARDED_EVENTS = frozenset({BotEvent.START, BotEvent.RESUME})


@dataclass
class TransitionResult:
    """Outcome of validating an event against a status."""
    valid: bool
    idempotent: bool = False
    target: Optional[Target] = None

    @property
    def needs_resolution(self) -> bool:
        return self.target == RUNNING_OR_WAITING


def validate_transition(current: BotStatus, event: BotEvent) -> TransitionResult:
    """Validate an event against the current status.

    The idempotency rule is checked first: an event whose accepted target the
    bot already sits in is a successful no-op.

    Args:
        current: Current bot status
        event: Requested event

    Returns:
        TransitionResult with valid/idempotent flags and the (possibly
        unresolved) target status
    """
    current = BotStatus(current)
    event = BotEvent(event)

    if current in IDEMPOTENT_TARGETS.get(event, frozenset()):
        return TransitionResult(valid=True, idempotent=True, target=current)

    if event in GLOBAL_TRANSITIONS:
        target = GLOBAL_TRANSITIONS[event]
        if target == current:
            return TransitionResult(valid=True, idempotent=True, target=current)
        return TransitionResult(valid=True, target=target)

    target = TRANSITIONS.get((current, event))
    if target is None:
        return TransitionResult(valid=False)
    return TransitionResult(valid=True, target=target)


def can_modify_config(status: BotStatus) -> bool:
    """Config writes are allowed only while the bot is not trading."""
    return BotStatus(status) in CONFIG_MUTABLE_STATUSES


# ============================================================================
# Data-driven target resolution
# ============================================================================

TriggerPolicy = Callable[[Dict[str, Any]], bool]


def _load_config(config: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    if config is None:
        return {}
    if isinstance(config, str):
        loaded = json.loads(config)
    else:
        loaded = config
    if not isinstance(loaded, dict):
        raise ValueError("config must be an object")
    return loaded


def has_trigger_condition(config: Dict[str, Any]) -> bool:
    """Default trigger policy.

    A config carries a trigger when it names a base price type and at least
    one of the rise-sell / fall-buy deltas.
    """
    trigger = config.get("trigger")
    if not isinstance(trigger, dict):
        return False
    if not trigger.get("basePriceType"):
        return False
    return bool(trigger.get("riseSell")) or bool(trigger.get("fallBuy"))


def resolve_target(
    target: Target,
    config: Union[str, Dict[str, Any], None],
    policy: TriggerPolicy = has_trigger_condition,
) -> BotStatus:
    """Resolve a RUNNING_OR_WAITING target from the bot config.

    Unparsable config falls back to RUNNING.
    """
    if target != RUNNING_OR_WAITING:
        return BotStatus(target)

    try:
        waits = policy(_load_config(config))
    except (ValueError, TypeError) as e:
        logger.warning(f"Could not evaluate trigger policy, defaulting to RUNNING: {e}")
        return BotStatus.RUNNING

    return BotStatus.WAITING_TRIGGER if waits else BotStatus.RUNNING
