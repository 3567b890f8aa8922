"""Tests for the SQLAlchemy-backed stores (temporary SQLite file)."""
from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from experiment_sdk.tier0_core.config import EngineConfig
from experiment_sdk.tier0_core.data import create_engine, create_schema, create_session_factory
from experiment_sdk.tier0_core.errors import CollaboratorUnavailable, ConflictError, NotFoundError
from experiment_sdk.tier3_platform.analytics import MetricsEngine
from experiment_sdk.tier3_platform.registry import ExperimentRegistry
from experiment_sdk.tier3_platform.sql_stores import SqlDefinitionStore, SqlEventStore
from experiment_sdk.tier3_platform.stores import ConversionEvent, ExposureEvent

from conftest import T0, experiment_payload


@pytest_asyncio.fixture
async def sessions(tmp_path):
    engine = create_engine(EngineConfig(database_url=f"sqlite+aiosqlite:///{tmp_path}/store.db"))
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()


class TestSqlDefinitionStore:
    @pytest.mark.asyncio
    async def test_round_trip_through_registry(self, sessions, clock):
        registry = ExperimentRegistry(SqlDefinitionStore(sessions), clock=clock)
        created = await registry.create("alice", experiment_payload(
            targetingRules=[{"attribute": "plan", "operator": "in", "value": ["pro", "team"]}],
            variants=[
                {"key": "control", "name": "Control", "weight": 50},
                {"key": "bold", "name": "Bold", "weight": 50, "payload": {"colour": "#f00"}},
            ],
        ))
        loaded = await registry.get("checkout_cta")
        assert loaded == created
        assert loaded.created_at == T0
        assert loaded.variants[1].payload == {"colour": "#f00"}

    @pytest.mark.asyncio
    async def test_duplicate_insert_conflicts(self, sessions, clock):
        registry = ExperimentRegistry(SqlDefinitionStore(sessions), clock=clock)
        await registry.create("alice", experiment_payload())
        with pytest.raises(ConflictError):
            await registry.create("alice", experiment_payload())

    @pytest.mark.asyncio
    async def test_update_and_soft_delete(self, sessions, clock):
        registry = ExperimentRegistry(SqlDefinitionStore(sessions), clock=clock)
        await registry.create("alice", experiment_payload())
        await registry.update("bob", "checkout_cta", {"name": "Renamed"})
        assert (await registry.get("checkout_cta")).name == "Renamed"

        await registry.soft_delete("bob", "checkout_cta")
        with pytest.raises(NotFoundError):
            await registry.get("checkout_cta")
        with pytest.raises(ConflictError):
            await registry.create("alice", experiment_payload())

    @pytest.mark.asyncio
    async def test_list_filters_and_orders(self, sessions, clock):
        registry = ExperimentRegistry(SqlDefinitionStore(sessions), clock=clock)
        for i, active in enumerate([True, False, True]):
            await registry.create("a", experiment_payload(key=f"exp_{i}", name=f"Exp {i}", isActive=active))
            clock.tick(minutes=1)
        await registry.soft_delete("a", "exp_2")

        page = await registry.list()
        assert [d.key for d in page.experiments] == ["exp_1", "exp_0"]
        assert page.total == 2
        assert (await registry.list(is_active=True)).total == 1
        assert (await registry.list(search="EXP 1")).total == 1
        assert (await registry.list(include_deleted=True, limit=1)).has_more


class TestSqlEventStore:
    @pytest.mark.asyncio
    async def test_aggregate_counts_distinct_subjects(self, sessions):
        store = SqlEventStore(sessions)
        for subject in ["u1", "u1", "u2", None]:
            await store.append(ExposureEvent("exp", "bold", T0, subject_id=subject))
        await store.append(ExposureEvent("exp", "control", T0, subject_id="u3"))
        await store.append(ExposureEvent("other", "bold", T0, subject_id="u9"))

        result = await store.aggregate("exp", "exposure")
        assert result["bold"].count == 4
        assert result["bold"].unique_subjects == 2
        assert result["control"].count == 1
        assert result["bold"].total_value == 0.0

    @pytest.mark.asyncio
    async def test_conversion_values_and_time_range(self, sessions):
        store = SqlEventStore(sessions)
        await store.append(ConversionEvent("exp", "bold", "purchase", T0, "u1", 10.0))
        await store.append(ConversionEvent("exp", "bold", "purchase", T0 + timedelta(days=1), "u2", 5.5))
        await store.append(ConversionEvent("exp", "bold", "signup", T0 + timedelta(days=2), "u3"))

        everything = await store.aggregate("exp", "conversion")
        assert everything["bold"].count == 3
        assert everything["bold"].total_value == pytest.approx(15.5)

        day_two = await store.aggregate("exp", "conversion", T0 + timedelta(days=1), T0 + timedelta(days=1))
        assert day_two["bold"].count == 1
        assert day_two["bold"].total_value == pytest.approx(5.5)

    @pytest.mark.asyncio
    async def test_metrics_engine_over_sql(self, sessions, clock):
        registry = ExperimentRegistry(SqlDefinitionStore(sessions), clock=clock)
        engine = MetricsEngine(registry, SqlEventStore(sessions), clock=clock, query_timeout=5.0)
        await registry.create("alice", experiment_payload())
        for i in range(40):
            await engine.track_exposure("checkout_cta", "control", f"c{i}")
            await engine.track_exposure("checkout_cta", "bold", f"b{i}")
        for i in range(4):
            await engine.track_conversion("checkout_cta", "control", "purchase", f"c{i}")
        for i in range(20):
            await engine.track_conversion("checkout_cta", "bold", "purchase", f"b{i}")

        metrics = await engine.get_metrics("checkout_cta")
        assert metrics.total_exposures == 80
        assert metrics.variants[1].confidence == 99


class TestFailureMapping:
    @pytest.mark.asyncio
    async def test_operational_errors_are_retried_then_mapped(self, sessions, monkeypatch):
        store = SqlDefinitionStore(sessions, retry_attempts=2)
        attempts = []

        async def broken(*args, **kwargs):
            attempts.append(1)
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr("sqlalchemy.ext.asyncio.AsyncSession.get", broken)
        with pytest.raises(CollaboratorUnavailable):
            await store.get("checkout_cta")
        assert len(attempts) == 2
