"""Tests for the tool registry and the built-in allowlist."""

from __future__ import annotations

import pytest

from autonomy.orchestrator.tool_registry import ToolRegistry, build_registry
from autonomy.tools import TOOL_FUNCTIONS


class TestToolRegistry:
    def test_register_and_get(self):
        registry = ToolRegistry()
        executor = lambda job: None  # noqa: E731
        registry.register("send_confirmation", executor)
        assert registry.get("send_confirmation") is executor
        assert "send_confirmation" in registry
        assert len(registry) == 1

    def test_unknown_name_returns_none(self):
        assert ToolRegistry().get("delete_everything") is None

    def test_duplicate_registration_raises(self):
        registry = ToolRegistry()
        registry.register("send_confirmation", lambda job: None)
        with pytest.raises(ValueError, match="already registered"):
            registry.register("send_confirmation", lambda job: None)

    def test_list_preserves_registration_order(self):
        registry = build_registry([("b", lambda j: None), ("a", lambda j: None)])
        assert registry.list() == ["b", "a"]


class TestDefaultTools:
    def test_allowlist_is_exactly_the_built_in_tools(self, orchestrator):
        assert orchestrator.runner.status()["registered_types"] == list(TOOL_FUNCTIONS)
        assert set(TOOL_FUNCTIONS) == {
            "send_confirmation",
            "send_cancellation",
            "send_reminder",
            "send_hold_followup",
            "send_waitlist_notification",
            "escalate_calendar_failure",
            "send_contact_followup",
            "retry_calendar_sync",
            "send_sms_reminder",
            "process_sms_outbox",
        }
