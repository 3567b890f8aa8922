"""Tests for ExperimentRegistry."""
from __future__ import annotations

from datetime import timedelta

import pytest

from experiment_sdk.tier0_core.errors import ConflictError, NotFoundError, ValidationError
from experiment_sdk.tier3_platform.experiments import ExperimentPatch
from experiment_sdk.tier3_platform.registry import ExperimentRegistry
from experiment_sdk.tier3_platform.stores import InMemoryDefinitionStore

from conftest import T0, MovableClock, experiment_payload


@pytest.fixture
def store() -> InMemoryDefinitionStore:
    return InMemoryDefinitionStore()


@pytest.fixture
def registry(store, clock) -> ExperimentRegistry:
    return ExperimentRegistry(store, clock=clock)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_stamps_audit_fields(self, registry):
        definition = await registry.create("alice", experiment_payload())
        assert definition.created_by == "alice"
        assert definition.updated_by == "alice"
        assert definition.created_at == T0
        assert definition.deleted_at is None
        assert (await registry.get("checkout_cta")) == definition

    @pytest.mark.asyncio
    async def test_scenario_d_overweight_rejected_before_write(self, registry, store):
        payload = experiment_payload(variants=[
            {"key": "control", "name": "Control", "weight": 60},
            {"key": "bold", "name": "Bold", "weight": 60},
        ])
        with pytest.raises(ValidationError) as exc_info:
            await registry.create("alice", payload)
        assert "variants.weight" in exc_info.value.fields
        assert await store.get("checkout_cta") is None

    @pytest.mark.asyncio
    async def test_weights_within_float_tolerance(self, registry):
        payload = experiment_payload(variants=[
            {"key": "control", "name": "C", "weight": 33.3},
            {"key": "a", "name": "A", "weight": 33.3},
            {"key": "b", "name": "B", "weight": 33.4},
        ])
        await registry.create("alice", payload)

    @pytest.mark.asyncio
    async def test_unweighted_variants_allowed(self, registry):
        payload = experiment_payload(variants=[
            {"key": "control", "name": "C"},
            {"key": "bold", "name": "B"},
        ])
        await registry.create("alice", payload)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides, field", [
        ({"defaultVariant": "missing"}, "defaultVariant"),
        ({"variants": [{"key": "control", "name": "A"}, {"key": "control", "name": "B"}]}, "variants"),
        ({"startDate": "2025-04-01T00:00:00Z", "endDate": "2025-03-01T00:00:00Z"}, "endDate"),
    ])
    async def test_invariants(self, registry, store, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            await registry.create("alice", experiment_payload(**overrides))
        assert field in exc_info.value.fields
        assert (await store.list(include_deleted=True))[1] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"key": "Bad-Key"},
        {"variants": [{"key": "control", "name": "Only"}]},
        {"variants": [{"key": "", "name": "Blank"}, {"key": "b", "name": "B"}]},
    ])
    async def test_schema_errors(self, registry, overrides):
        with pytest.raises(ValidationError):
            await registry.create("alice", experiment_payload(**overrides))

    @pytest.mark.asyncio
    async def test_duplicate_key_conflicts(self, registry):
        await registry.create("alice", experiment_payload())
        with pytest.raises(ConflictError):
            await registry.create("bob", experiment_payload(name="Again"))

    @pytest.mark.asyncio
    async def test_soft_deleted_key_cannot_be_reused(self, registry):
        await registry.create("alice", experiment_payload())
        await registry.soft_delete("alice", "checkout_cta")
        with pytest.raises(ConflictError):
            await registry.create("alice", experiment_payload())


class TestUpdate:
    @pytest.mark.asyncio
    async def test_merges_patch(self, registry, clock):
        await registry.create("alice", experiment_payload())
        clock.tick(hours=1)
        updated = await registry.update("bob", "checkout_cta", {"name": "Renamed"})
        assert updated.name == "Renamed"
        assert updated.variants[1].key == "bold"
        assert updated.created_by == "alice"
        assert updated.updated_by == "bob"
        assert updated.updated_at == T0 + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_accepts_patch_model(self, registry):
        await registry.create("alice", experiment_payload())
        updated = await registry.update("bob", "checkout_cta", ExperimentPatch(is_active=False))
        assert updated.is_active is False

    @pytest.mark.asyncio
    async def test_bad_merged_default_writes_nothing(self, registry):
        await registry.create("alice", experiment_payload())
        with pytest.raises(ValidationError):
            await registry.update("bob", "checkout_cta", {
                "variants": [{"key": "a", "name": "A"}, {"key": "b", "name": "B"}],
            })
        stored = await registry.get("checkout_cta")
        assert [v.key for v in stored.variants] == ["control", "bold"]
        assert stored.updated_by == "alice"

    @pytest.mark.asyncio
    async def test_key_is_immutable(self, registry):
        await registry.create("alice", experiment_payload())
        with pytest.raises(ValidationError):
            await registry.update("bob", "checkout_cta", {"key": "other"})

    @pytest.mark.asyncio
    async def test_unknown_key(self, registry):
        with pytest.raises(NotFoundError):
            await registry.update("bob", "nope", {"name": "x"})


class TestReads:
    @pytest.mark.asyncio
    async def test_get_hides_deleted_unless_asked(self, registry):
        await registry.create("alice", experiment_payload())
        retired = await registry.soft_delete("carol", "checkout_cta")
        assert retired.is_active is False
        assert retired.deleted_by == "carol"
        with pytest.raises(NotFoundError):
            await registry.get("checkout_cta")
        assert (await registry.get("checkout_cta", include_deleted=True)).is_deleted

    @pytest.mark.asyncio
    async def test_list_newest_first_with_pagination(self, registry, clock):
        for i in range(5):
            await registry.create("alice", experiment_payload(key=f"exp_{i}", name=f"Exp {i}"))
            clock.tick(minutes=1)

        page = await registry.list(limit=2)
        assert [d.key for d in page.experiments] == ["exp_4", "exp_3"]
        assert page.total == 5
        assert page.has_more

        last = await registry.list(limit=2, skip=4)
        assert [d.key for d in last.experiments] == ["exp_0"]
        assert not last.has_more

    @pytest.mark.asyncio
    async def test_list_filters(self, registry):
        await registry.create("a", experiment_payload(key="checkout_cta", name="Checkout CTA"))
        await registry.create("a", experiment_payload(key="pricing_page", name="Pricing", isActive=False))
        await registry.create("a", experiment_payload(key="old_banner", name="Banner"))
        await registry.soft_delete("a", "old_banner")

        assert (await registry.list(is_active=True)).total == 1
        assert [d.key for d in (await registry.list(search="PRICING")).experiments] == ["pricing_page"]
        assert (await registry.list()).total == 2
        assert (await registry.list(include_deleted=True)).total == 3

    @pytest.mark.asyncio
    async def test_list_rejects_bad_pagination(self, registry):
        with pytest.raises(ValidationError):
            await registry.list(limit=0)

    @pytest.mark.asyncio
    async def test_list_running_respects_window(self, registry, clock):
        await registry.create("a", experiment_payload(key="live"))
        await registry.create("a", experiment_payload(
            key="future", startDate=(T0 + timedelta(days=3)).isoformat(),
        ))
        await registry.create("a", experiment_payload(key="paused", isActive=False))
        assert [d.key for d in await registry.list_running()] == ["live"]

        clock.tick(days=4)
        assert sorted(d.key for d in await registry.list_running()) == ["future", "live"]

    @pytest.mark.asyncio
    async def test_set_status(self, registry):
        await registry.create("a", experiment_payload(isActive=False))
        updated = await registry.set_status("b", "checkout_cta", True)
        assert updated.is_active and updated.updated_by == "b"
