"""Experiment Engine Kernel: minimal WebSocket entry point.

Two paths:
  /api     JSON request/response: {"id", "method", "params"}
  /health  one status message, then close

Each message is handled independently; a bad message never drops the
connection.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import signal
from typing import Any, Awaitable, Callable

import websockets
from pydantic import BaseModel

from experiment_sdk import schemas
from experiment_sdk.service import ExperimentService, build_service
from experiment_sdk.tier0_core.config import get_config
from experiment_sdk.tier0_core.errors import EngineError, NotFoundError, ValidationError
from experiment_sdk.tier0_core.logging import bind_context, clear_context, get_logger
from experiment_sdk.tier0_core.metrics import start_metrics_server
from experiment_sdk.tier1_runtime.clock import utcnow
from experiment_sdk.tier1_runtime.serialize import to_jsonable
from experiment_sdk.tier1_runtime.validate import validate_input
from experiment_sdk.tier3_platform.analytics import DateRange

log = get_logger("experiment_sdk.kernel")

# Connection bookkeeping
_sessions: dict[str, dict] = {}

Handler = Callable[[ExperimentService, Any], Any]


def _metrics(svc: ExperimentService, r: schemas.MetricsRequest) -> Awaitable[Any]:
    if (r.start is None) != (r.end is None):
        raise ValidationError(
            user_message="Pass both start and end, or neither.",
            fields={"start": "required with end", "end": "required with start"},
        )
    date_range = DateRange(r.start, r.end) if r.start is not None else None
    return svc.metrics(r.experiment_key, date_range)


METHODS: dict[str, tuple[type[BaseModel], Handler]] = {
    # decisions
    "evaluate": (
        schemas.EvaluateRequest,
        lambda svc, r: svc.evaluate(
            r.experiment_key, r.subject_id, r.attributes, r.force_variant, r.fallback_variant,
        ),
    ),
    "decide": (
        schemas.EvaluateRequest,
        lambda svc, r: svc.decide(
            r.experiment_key, r.subject_id, r.attributes, r.force_variant,
            r.fallback_variant, r.record_exposure,
        ),
    ),
    "rollout": (
        schemas.RolloutCheckRequest,
        lambda svc, r: svc.rollout(r.feature_key, r.subject_id, r.segments),
    ),
    # tracking & results
    "trackExposure": (
        schemas.TrackExposureRequest,
        lambda svc, r: svc.track_exposure(r.experiment_key, r.variant_key, r.subject_id, r.metadata),
    ),
    "trackConversion": (
        schemas.TrackConversionRequest,
        lambda svc, r: svc.track_conversion(
            r.experiment_key, r.variant_key, r.conversion_type, r.subject_id, r.value, r.metadata,
        ),
    ),
    "metrics": (schemas.MetricsRequest, _metrics),
    "summary": (schemas.SummaryRequest, lambda svc, r: svc.summary(r.experiment_key)),
    # experiment administration
    "createExperiment": (
        schemas.CreateExperimentRequest,
        lambda svc, r: svc.create_experiment(r.actor, r.experiment),
    ),
    "updateExperiment": (
        schemas.UpdateExperimentRequest,
        lambda svc, r: svc.update_experiment(r.actor, r.experiment_key, r.patch),
    ),
    "getExperiment": (
        schemas.GetExperimentRequest,
        lambda svc, r: svc.get_experiment(r.experiment_key, r.include_deleted),
    ),
    "listExperiments": (
        schemas.ListExperimentsRequest,
        lambda svc, r: svc.list_experiments(**r.model_dump()),
    ),
    "setExperimentStatus": (
        schemas.SetStatusRequest,
        lambda svc, r: svc.set_experiment_status(r.actor, r.experiment_key, r.is_active),
    ),
    "retireExperiment": (
        schemas.RetireExperimentRequest,
        lambda svc, r: svc.retire_experiment(r.actor, r.experiment_key),
    ),
    # rollout administration
    "setRollout": (schemas.SetRolloutRequest, lambda svc, r: svc.set_rollout(r.config)),
    "getRollout": (schemas.FeatureKeyRequest, lambda svc, r: svc.get_rollout(r.feature_key)),
    "listRollouts": (schemas.EmptyRequest, lambda svc, r: svc.list_rollouts()),
    "increaseRollout": (
        schemas.ChangeRolloutRequest,
        lambda svc, r: svc.increase_rollout(r.feature_key, r.percentage),
    ),
    "decreaseRollout": (
        schemas.ChangeRolloutRequest,
        lambda svc, r: svc.decrease_rollout(r.feature_key, r.percentage),
    ),
    "killSwitch": (schemas.FeatureKeyRequest, lambda svc, r: svc.kill_switch(r.feature_key)),
    "fullRollout": (schemas.FeatureKeyRequest, lambda svc, r: svc.full_rollout(r.feature_key)),
    "snapshotRollouts": (
        schemas.EmptyRequest,
        lambda svc, r: svc.snapshot_rollouts().decode(),
    ),
    "restoreRollouts": (
        schemas.RestoreRolloutsRequest,
        lambda svc, r: svc.restore_rollouts(r.snapshot),
    ),
}


def _error(request_id: Any, error: EngineError) -> dict:
    body = error.to_dict()["error"]
    body["status"] = error.status_code
    return {"id": request_id, "ok": False, "error": body}


async def handle_message(service: ExperimentService, raw: str | bytes) -> dict:
    """Decode one request, run it, and build the response envelope."""
    request_id: Any = None
    try:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                user_message="Message is not valid JSON.",
                detail=str(exc),
            ) from exc
        if not isinstance(message, dict):
            raise ValidationError(user_message="Message must be a JSON object.")

        request_id = message.get("id")
        method = message.get("method")
        bind_context(request_id=request_id, method=method)
        if method not in METHODS:
            raise NotFoundError(
                code="unknown_method",
                user_message=f"Unknown method: {method!r}.",
            )

        schema, handler = METHODS[method]
        params = validate_input(schema, message.get("params") or {})
        result = handler(service, params)
        if inspect.isawaitable(result):
            result = await result
        log.info("request_handled", ok=True)
        return {"id": request_id, "ok": True, "result": to_jsonable(result)}

    except EngineError as exc:
        log.info("request_failed", code=exc.code, status=exc.status_code)
        return _error(request_id, exc)
    except Exception as exc:
        log.exception("request_crashed", error_type=type(exc).__name__)
        return _error(request_id, EngineError(detail=str(exc)))
    finally:
        clear_context()


async def _handle_api(ws, service: ExperimentService):
    """Handle /api WebSocket sessions."""
    session_id = f"api-{id(ws):x}"
    _sessions[session_id] = {"type": "api", "started": utcnow().isoformat()}
    log.info("session_start", session_id=session_id, remote=str(ws.remote_address))
    try:
        async for message in ws:
            response = await handle_message(service, message)
            await ws.send(json.dumps(response, default=str))
    finally:
        log.info("session_end", session_id=session_id)
        _sessions.pop(session_id, None)


def _router(service: ExperimentService):
    async def route(ws):
        """Route incoming WebSocket connections by path."""
        path = ws.request.path if hasattr(ws, "request") else getattr(ws, "path", "/")
        if path == "/api":
            await _handle_api(ws, service)
        elif path == "/health":
            await ws.send(json.dumps({
                "status": "ok",
                "sessions": len(_sessions),
                "rollouts": len(service.list_rollouts()),
                "uptime_check": utcnow().isoformat(),
            }))
        else:
            await ws.close(4004, f"Unknown path: {path}. Use /api or /health.")

    return route


async def main():
    config = get_config()
    service = await build_service(config)
    if config.metrics_enabled:
        start_metrics_server(config.metrics_port)

    log.info("kernel_starting", host=config.kernel_host, port=config.kernel_port)

    loop = asyncio.get_running_loop()
    stop = loop.create_future()

    def _shutdown():
        if not stop.done():
            stop.set_result(True)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    try:
        async with websockets.serve(_router(service), config.kernel_host, config.kernel_port):
            log.info("kernel_ready", url=f"ws://{config.kernel_host}:{config.kernel_port}")
            await stop
    finally:
        await service.close()

    log.info("kernel_shutdown_complete")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
