"""Tests for the kernel's message handling (no sockets involved)."""
from __future__ import annotations

import json

import pytest

from kernel.main import METHODS, handle_message

from conftest import experiment_payload


async def call(service, method, params=None, request_id=1):
    message = {"id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return await handle_message(service, json.dumps(message))


def test_every_method_has_a_schema():
    for name, (schema, handler) in METHODS.items():
        assert schema.model_config.get("extra") == "forbid", name
        assert callable(handler)


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_create_then_decide(self, service):
        created = await call(service, "createExperiment", {
            "actor": "alice", "experiment": experiment_payload(),
        })
        assert created["ok"] is True
        assert created["result"]["key"] == "checkout_cta"
        assert created["result"]["defaultVariant"] == "control"

        decided = await call(service, "evaluate", {
            "experimentKey": "checkout_cta", "subjectId": "u1", "forceVariant": "bold",
        }, request_id="abc")
        assert decided == {
            "id": "abc",
            "ok": True,
            "result": {"experimentKey": "checkout_cta", "variant": "bold", "reason": "forced"},
        }

    @pytest.mark.asyncio
    async def test_unknown_method(self, service):
        response = await call(service, "dropTables")
        assert response["ok"] is False
        assert response["error"]["code"] == "unknown_method"
        assert response["error"]["status"] == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", b"\xff"])
    async def test_malformed_messages(self, service, raw):
        response = await handle_message(service, raw)
        assert response["id"] is None
        assert response["error"]["code"] == "validation_error"
        assert response["error"]["status"] == 422

    @pytest.mark.asyncio
    async def test_unknown_params_are_rejected(self, service):
        response = await call(service, "getRollout", {"featureKey": "f", "extra": True})
        assert response["error"]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_engine_errors_keep_their_status(self, service):
        response = await call(service, "getExperiment", {"experimentKey": "missing"})
        assert response["error"]["code"] == "not_found"
        assert response["error"]["status"] == 404

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_generic(self, service, monkeypatch):
        async def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(service, "summary", explode)
        response = await call(service, "summary", {"experimentKey": "x"})
        assert response["error"] == {
            "code": "internal_error",
            "message": "An unexpected error occurred.",
            "status": 500,
        }


class TestMethods:
    @pytest.mark.asyncio
    async def test_metrics_needs_both_bounds(self, service):
        await call(service, "createExperiment", {"actor": "a", "experiment": experiment_payload()})
        response = await call(service, "metrics", {
            "experimentKey": "checkout_cta", "start": "2025-03-01T00:00:00Z",
        })
        assert response["error"]["status"] == 422

        response = await call(service, "metrics", {
            "experimentKey": "checkout_cta",
            "start": "2025-03-01T00:00:00Z",
            "end": "2025-03-02T00:00:00Z",
        })
        assert response["ok"] is True
        assert response["result"]["totalExposures"] == 0

    @pytest.mark.asyncio
    async def test_tracking_then_summary(self, service):
        await call(service, "createExperiment", {"actor": "a", "experiment": experiment_payload()})
        await call(service, "trackExposure", {
            "experimentKey": "checkout_cta", "variantKey": "bold", "subjectId": "u1",
        })
        await call(service, "trackConversion", {
            "experimentKey": "checkout_cta", "variantKey": "bold",
            "conversionType": "purchase", "value": 3.5,
        })
        response = await call(service, "summary", {"experimentKey": "checkout_cta"})
        assert response["result"]["bestVariant"] == "bold"
        assert response["result"]["recommendation"] == "need_more_data"

    @pytest.mark.asyncio
    async def test_list_experiments(self, service):
        await call(service, "createExperiment", {"actor": "a", "experiment": experiment_payload()})
        response = await call(service, "listExperiments", {"limit": 10})
        assert response["result"]["total"] == 1
        assert response["result"]["hasMore"] is False
        assert response["result"]["experiments"][0]["key"] == "checkout_cta"

    @pytest.mark.asyncio
    async def test_kill_switch_on_unknown_feature(self, service):
        response = await call(service, "killSwitch", {"featureKey": "feature_x"})
        assert response == {"id": 1, "ok": True, "result": None}

    @pytest.mark.asyncio
    async def test_rollout_admin_and_snapshot(self, service):
        await call(service, "setRollout", {"config": {"featureKey": "new_editor", "percentage": 100}})
        assert (await call(service, "rollout", {
            "featureKey": "new_editor", "subjectId": "u1",
        }))["result"] is True

        snapshot = (await call(service, "snapshotRollouts"))["result"]
        await call(service, "killSwitch", {"featureKey": "new_editor"})
        restored = await call(service, "restoreRollouts", {"snapshot": snapshot})
        assert restored["result"] == 1

        current = await call(service, "getRollout", {"featureKey": "new_editor"})
        assert current["result"]["percentage"] == 100
