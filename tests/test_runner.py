"""Tests for runner wiring: engine construction from settings and built-in capabilities."""

from pathlib import Path

import pytest

from taskflow import runner
from taskflow.builtin import register_builtin
from taskflow.queue.executor import CapabilityRegistry
from taskflow.settings import get_default_settings
from taskflow.workflows import WorkflowCatalog


class TestBuildEngine:
    """_build_engine / _build_audit from a settings dict."""

    def test_engine_uses_settings(self) -> None:
        settings = get_default_settings()
        settings["triggers"] = {"new_lead": "new-lead"}
        settings["queue"]["max_concurrency"] = 4
        engine = runner._build_engine(settings, WorkflowCatalog(), CapabilityRegistry(), None)
        assert engine.triggers == {"new_lead": "new-lead"}
        assert engine._max_concurrency == 4

    def test_audit_disabled(self) -> None:
        settings = get_default_settings()
        settings["audit"]["enabled"] = False
        assert runner._build_audit(settings) is None

    def test_audit_path_relative_to_project(self) -> None:
        journal = runner._build_audit(get_default_settings())
        assert journal is not None
        assert journal._db_path == Path(runner._PROJECT_ROOT) / "data" / "audit.db"

    def test_bundled_workflows_load(self) -> None:
        catalog = runner._build_catalog(get_default_settings())
        assert "new-lead" in catalog


class TestBuiltinCapabilities:
    """builtin.echo and builtin.sleep."""

    @pytest.mark.asyncio
    async def test_echo_and_sleep(self) -> None:
        registry = CapabilityRegistry()
        register_builtin(registry)
        assert registry.capabilities() == [("builtin", "echo"), ("builtin", "sleep")]
        echo = await registry.get("builtin", "echo").invoke({"x": 1})
        assert echo == {"success": True, "echo": {"x": 1}}
        slept = await registry.get("builtin", "sleep").invoke({"seconds": 0})
        assert slept == {"success": True, "slept": 0.0}
