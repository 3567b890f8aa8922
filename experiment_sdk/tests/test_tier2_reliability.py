"""Tests for tier2_reliability modules."""
from __future__ import annotations

import dataclasses
import inspect

import pytest

from experiment_sdk.tier0_core.errors import CollaboratorUnavailable, ValidationError
from experiment_sdk.tier2_reliability.audit import (
    KILL_SWITCH_ACTIVATED,
    ROLLOUT_CHANGED,
    AuditEvent,
    EventSink,
    InMemoryEventSink,
    LogEventSink,
    create_sink,
)
from experiment_sdk.tier2_reliability.fallback import LastKnownGoodCache, with_fallback

from conftest import T0


# ── fallback ───────────────────────────────────────────────────────────────

class TestWithFallback:
    def test_sync_returns_default_on_error(self):
        @with_fallback(False)
        def check():
            raise RuntimeError("store exploded")

        assert check() is False

    def test_sync_passes_through_result(self):
        @with_fallback(False)
        def check():
            return True

        assert check() is True

    def test_reraise_wins_over_on(self):
        @with_fallback(False, on=Exception, reraise=ValidationError)
        def check():
            raise ValidationError(user_message="empty subject")

        with pytest.raises(ValidationError):
            check()

    @pytest.mark.asyncio
    async def test_async_returns_default_for_matching_error(self):
        @with_fallback(None, on=CollaboratorUnavailable)
        async def track():
            raise CollaboratorUnavailable()

        assert inspect.iscoroutinefunction(track)
        assert await track() is None

    @pytest.mark.asyncio
    async def test_async_non_matching_error_propagates(self):
        @with_fallback(None, on=CollaboratorUnavailable)
        async def track():
            raise KeyError("x")

        with pytest.raises(KeyError):
            await track()


class TestLastKnownGoodCache:
    @pytest.mark.asyncio
    async def test_serves_last_good_value_during_outage(self):
        state = {"down": False, "value": "v1"}

        async def load(key):
            if state["down"]:
                raise CollaboratorUnavailable()
            return f"{key}:{state['value']}"

        cached = LastKnownGoodCache(load, on=CollaboratorUnavailable)
        assert await cached("exp") == "exp:v1"

        state["down"] = True
        assert await cached("exp") == "exp:v1"

    @pytest.mark.asyncio
    async def test_fetch_reports_staleness(self):
        state = {"down": False}

        async def load(key):
            if state["down"]:
                raise CollaboratorUnavailable()
            return key.upper()

        cached = LastKnownGoodCache(load, on=CollaboratorUnavailable)
        assert await cached.fetch("exp") == ("EXP", False)
        state["down"] = True
        assert await cached.fetch("exp") == ("EXP", True)

    @pytest.mark.asyncio
    async def test_outage_without_cache_raises(self):
        async def load(key):
            raise CollaboratorUnavailable()

        cached = LastKnownGoodCache(load, on=CollaboratorUnavailable)
        with pytest.raises(CollaboratorUnavailable):
            await cached("exp")

    @pytest.mark.asyncio
    async def test_forget_drops_entry(self):
        state = {"down": False}

        async def load(key):
            if state["down"]:
                raise CollaboratorUnavailable()
            return key

        cached = LastKnownGoodCache(load, on=CollaboratorUnavailable)
        await cached("exp")
        cached.forget("exp")
        state["down"] = True
        with pytest.raises(CollaboratorUnavailable):
            await cached("exp")


# ── audit ──────────────────────────────────────────────────────────────────

def _event(name: str = ROLLOUT_CHANGED) -> AuditEvent:
    return AuditEvent(
        name=name,
        feature_key="new_editor",
        previous_percentage=10.0,
        new_percentage=20.0,
        timestamp=T0,
    )


class TestAudit:
    @pytest.mark.asyncio
    async def test_in_memory_sink_keeps_order(self):
        sink = InMemoryEventSink()
        await sink.publish(_event())
        await sink.publish(_event(KILL_SWITCH_ACTIVATED))
        assert [e.name for e in sink.events] == [ROLLOUT_CHANGED, KILL_SWITCH_ACTIVATED]
        assert len(sink.named(KILL_SWITCH_ACTIVATED)) == 1

    @pytest.mark.asyncio
    async def test_log_sink_publishes_without_error(self):
        await LogEventSink().publish(_event())

    def test_audit_events_are_immutable(self):
        event = _event()
        with pytest.raises(dataclasses.FrozenInstanceError):
            event.new_percentage = 50.0  # type: ignore[misc]

    def test_create_sink_by_backend(self):
        assert isinstance(create_sink("memory"), InMemoryEventSink)
        assert isinstance(create_sink("log"), LogEventSink)
        assert isinstance(create_sink("memory"), EventSink)
