"""Collaborator protocols: capabilities the core invokes, and sinks it notifies.

The engine only depends on these shapes. Implementations come from the
surrounding business system (content generation, CRM updates, email, ...).
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class CapabilityHandler(Protocol):
    """One registered (capability, action) pair. Single-method interface."""

    async def invoke(self, payload: dict[str, Any]) -> Any:
        """Run the action with the resolved task input and return opaque output.

        Raise any exception to signal a capability error; it is retried up to
        the task's retry budget.
        """


@runtime_checkable
class Notifier(Protocol):
    """Delivers completion, failure and SLA alerts to a named target (e.g. 'ceo')."""

    async def notify(self, target: str, subject: str, body: str) -> None:
        """Send one message. Errors are logged by the caller and never propagated."""


@runtime_checkable
class AuditSink(Protocol):
    """Fire-and-forget record of task and workflow transitions for dashboards."""

    async def record(self, topic: str, payload: dict[str, Any]) -> int | None:
        """Append one record. The engine keeps working if this raises."""
