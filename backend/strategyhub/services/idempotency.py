"""Client order id scheme and reconcile state hashing.

Pure functions, no I/O. The client order id is a deterministic function of
(bot id, intent sequence) so a resubmitted intent always carries the same id
and the exchange can deduplicate it.
"""

import hashlib
import json
from typing import Iterable, Tuple

# Marker prefix for orders placed by this system
ORDER_PREFIX = "gb1"


def generate_client_order_id(bot_id: str, intent_seq: int) -> str:
    """Build the client order id for a bot's intent.

    Args:
        bot_id: Bot identifier (at least 8 characters)
        intent_seq: Positive, per-bot monotonically increasing sequence

    Returns:
        Client order id of the form ``gb1-{bot_id[:8]}-{intent_seq}``

    Raises:
        ValueError: If bot_id is too short or intent_seq is not a positive int
    """
    if not isinstance(bot_id, str) or len(bot_id) < 8:
        raise ValueError(f"bot_id must be at least 8 characters, got {bot_id!r}")
    if isinstance(intent_seq, bool) or not isinstance(intent_seq, int) or intent_seq < 1:
        raise ValueError(f"intent_seq must be a positive integer, got {intent_seq!r}")

    return f"{ORDER_PREFIX}-{bot_id[:8]}-{intent_seq}"


def bot_order_prefix(bot_id: str) -> str:
    """Client order id prefix shared by every order of one bot."""
    return f"{ORDER_PREFIX}-{bot_id[:8]}-"


def is_our_order(client_order_id) -> bool:
    """Check whether a client order id carries our marker prefix."""
    return isinstance(client_order_id, str) and client_order_id.startswith(ORDER_PREFIX)


def compute_state_hash(open_order_ids: Iterable[str], trade_ids: Iterable[str]) -> Tuple[str, str]:
    """Compute the reconcile state hash.

    Only ids take part (no timestamps), so an unchanged exchange state always
    hashes to the same value.

    Returns:
        Tuple of (state_json, state_hash)
    """
    state = {
        "openOrderIds": sorted(open_order_ids),
        "tradeIds": sorted(trade_ids),
    }
    state_json = json.dumps(state, separators=(",", ":"))
    state_hash = hashlib.sha256(state_json.encode("utf-8")).hexdigest()[:16]
    return state_json, state_hash
