"""Executor: explicit capability registry and timeout-bounded invocation."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from taskflow.contract import CapabilityHandler
from taskflow.queue.errors import (
    CapabilityError,
    ExecutionError,
    TaskTimeoutError,
    UnresolvableCapabilityError,
)

logger = logging.getLogger(__name__)

HandlerFn = Callable[[dict[str, Any]], Any | Awaitable[Any]]


@dataclass(frozen=True)
class FunctionHandler:
    """Adapt a plain function to CapabilityHandler.

    Coroutine functions are awaited; blocking functions run in a worker thread
    so they do not stall the driver loop.
    """

    fn: HandlerFn

    async def invoke(self, payload: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(payload)
        result = await asyncio.to_thread(self.fn, payload)
        if inspect.isawaitable(result):
            return await result
        return result


class CapabilityRegistry:
    """Mapping (capability, action) -> handler, populated at startup."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], CapabilityHandler] = {}

    def register(self, capability: str, action: str, handler: CapabilityHandler | HandlerFn) -> None:
        """Register a handler object or a plain function. Replaces an existing entry."""
        if not isinstance(handler, CapabilityHandler):
            if not callable(handler):
                raise TypeError(f"Handler for {capability}.{action} must be callable or define invoke()")
            handler = FunctionHandler(handler)
        key = (capability, action)
        if key in self._handlers:
            logger.warning("capabilities: replacing handler for %s.%s", capability, action)
        self._handlers[key] = handler

    def unregister(self, capability: str, action: str) -> bool:
        return self._handlers.pop((capability, action), None) is not None

    def get(self, capability: str, action: str) -> CapabilityHandler | None:
        return self._handlers.get((capability, action))

    def __contains__(self, key: object) -> bool:
        return key in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def capabilities(self) -> list[tuple[str, str]]:
        return sorted(self._handlers)


def _discard_late_result(call: "asyncio.Future[Any]") -> None:
    """Consume the outcome of an abandoned call so asyncio does not warn about it."""
    if call.cancelled():
        return
    exc = call.exception()
    if exc is not None:
        logger.debug("executor: abandoned call finished with %s: %s", type(exc).__name__, exc)


class Executor:
    """Invoke a capability under a timeout. Never touches the Task Store."""

    def __init__(self, registry: CapabilityRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    async def execute(
        self,
        capability: str,
        action: str,
        payload: dict[str, Any],
        timeout: float,
    ) -> Any:
        """Return the capability output.

        Raises UnresolvableCapabilityError immediately when nothing is registered,
        TaskTimeoutError when the timer fires first (the call is abandoned), and
        CapabilityError wrapping anything the handler raises.
        """
        handler = self._registry.get(capability, action)
        if handler is None:
            raise UnresolvableCapabilityError(f"No handler registered for {capability}.{action}")

        t0 = time.monotonic()
        call = asyncio.ensure_future(handler.invoke(payload))
        try:
            done, _ = await asyncio.wait({call}, timeout=timeout)
        except asyncio.CancelledError:
            call.cancel()
            raise

        if not done:
            call.cancel()
            call.add_done_callback(_discard_late_result)
            raise TaskTimeoutError(f"Task timed out after {timeout:g}s")

        duration_ms = int((time.monotonic() - t0) * 1000)
        if call.cancelled():
            raise CapabilityError(f"{capability}.{action} was cancelled")
        exc = call.exception()
        if exc is not None:
            logger.debug(
                "executor: %s.%s failed after %dms: %s", capability, action, duration_ms, exc
            )
            if isinstance(exc, ExecutionError):
                raise exc
            raise CapabilityError(str(exc) or type(exc).__name__) from exc

        logger.debug("executor: %s.%s succeeded in %dms", capability, action, duration_ms)
        result = call.result()
        if result is None:
            return {"success": True, "agent": capability, "action": action}
        return result
