# API Routers

from . import bots, health, kill_switch, metrics

__all__ = ["bots", "health", "kill_switch", "metrics"]
