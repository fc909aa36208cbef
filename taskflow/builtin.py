"""Built-in capabilities for smoke runs: builtin.echo and builtin.sleep."""

import asyncio
from typing import Any

from taskflow.queue.executor import CapabilityRegistry

CAPABILITY = "builtin"


async def echo(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the resolved input unchanged."""
    return {"success": True, "echo": payload}


async def sleep(payload: dict[str, Any]) -> dict[str, Any]:
    """Sleep for payload['seconds'] (default 1), then succeed."""
    seconds = float(payload.get("seconds", 1))
    await asyncio.sleep(seconds)
    return {"success": True, "slept": seconds}


def register_builtin(registry: CapabilityRegistry) -> None:
    registry.register(CAPABILITY, "echo", echo)
    registry.register(CAPABILITY, "sleep", sleep)
