"""REST handler for experiment, trial-job, metric and TensorBoard operations.

Each route performs exactly one delegated call against the orchestration
engine, the datastore or the TensorBoard session manager, and every failure
flows through :func:`trialgate.rest.errors.error_response`.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .. import __version__
from ..config import GatewayConfig, get_config
from ..contracts import DataStore, ExperimentMode, Manager, render_trial_job
from ..exceptions import (
    DatastoreInitError,
    GatewayError,
    ServiceStoppedError,
    SessionCleanupError,
    ValidationError,
    wrap_delegated_error,
)
from ..logging import get_logger, log_request
from ..monitoring import GatewayMetrics
from ..tensorboard import TensorBoardSessionManager
from .errors import error_message, error_response

logger = get_logger("rest")

ShutdownHook = Callable[[], Awaitable[None]]

CORS_ALLOW_METHODS = ["PUT", "POST", "GET", "DELETE", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Origin", "X-Requested-With", "Content-Type", "Accept"]
JSON_MEDIA_TYPE = "application/json"


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return jsonable_encoder(value)


def _empty(background: Optional[BackgroundTask] = None) -> Response:
    return Response(status_code=200, media_type=JSON_MEDIA_TYPE, background=background)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "invalid request: " + ("; ".join(parts) or "malformed input")


def _error_json(exc: BaseException, background: Optional[BackgroundTask] = None) -> JSONResponse:
    status, body = error_response(exc)
    return JSONResponse(body, status_code=status, background=background)


class RequestGateMiddleware(BaseHTTPMiddleware):
    """Refuses traffic once the gateway stopped and renders unexpected errors as ``{error}``."""

    def __init__(self, app, handler: "RestHandler"):
        super().__init__(app)
        self.handler = handler

    async def dispatch(self, request: Request, call_next):
        if not self.handler.accepting:
            log_request(request.method, str(request.url), None)
            return _error_json(ServiceStoppedError("gateway is shut down and no longer serves requests"))
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error serving {} {}", request.method, request.url.path)
            return _error_json(exc)


class RestHandler:
    """Routes REST calls to the engine, the datastore and the TensorBoard registry."""

    def __init__(
        self,
        manager: Manager,
        datastore: DataStore,
        sessions: TensorBoardSessionManager,
        *,
        experiment_mode: Union[ExperimentMode, str] = ExperimentMode.NEW,
        shutdown: Optional[ShutdownHook] = None,
    ):
        self.manager = manager
        self.datastore = datastore
        self.sessions = sessions
        self.experiment_mode = ExperimentMode(experiment_mode)
        self.shutdown = shutdown
        self.accepting = True

    def create_router(self) -> APIRouter:
        router = APIRouter(dependencies=[Depends(self.before_dispatch)])

        router.add_api_route("/check-status", self.check_status, methods=["GET"])
        router.add_api_route("/experiment", self.get_experiment_profile, methods=["GET"])
        router.add_api_route("/experiment", self.update_experiment_profile, methods=["PUT"])
        router.add_api_route("/experiment", self.start_experiment, methods=["POST"])
        router.add_api_route("/experiment", self.stop_experiment, methods=["DELETE"])
        router.add_api_route("/job-statistics", self.get_trial_job_statistics, methods=["GET"])
        router.add_api_route(
            "/experiment/cluster-metadata", self.set_cluster_metadata, methods=["PUT"]
        )
        router.add_api_route(
            "/experiment/cluster-metadata/{key}", self.get_cluster_metadata, methods=["GET"]
        )
        router.add_api_route("/trial-jobs", self.list_trial_jobs, methods=["GET"])
        router.add_api_route("/trial-jobs", self.add_trial_job, methods=["POST"])
        router.add_api_route("/trial-jobs/{job_id}", self.get_trial_job, methods=["GET"])
        router.add_api_route("/trial-jobs/{job_id}", self.cancel_trial_job, methods=["DELETE"])
        router.add_api_route("/metric-data/{job_id}", self.get_metric_data, methods=["GET"])
        router.add_api_route("/tensorboard", self.list_tensorboards, methods=["GET"])
        router.add_api_route("/tensorboard", self.start_tensorboard, methods=["POST"])
        router.add_api_route("/tensorboard", self.stop_tensorboard, methods=["DELETE"])

        return router

    # -- plumbing ---------------------------------------------------------

    async def before_dispatch(self, request: Request) -> None:
        log_request(request.method, str(request.url), await request.body())

    async def handle_error(self, request: Request, exc: Exception) -> JSONResponse:
        if isinstance(exc, RequestValidationError):
            exc = ValidationError(_validation_message(exc))
        logger.info("{} {} failed: {}", request.method, request.url.path, exc)
        return _error_json(exc)

    async def _delegate(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await func(*args)
        except GatewayError:
            raise
        except Exception as exc:
            raise wrap_delegated_error(exc, operation) from exc

    async def _offload(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await run_in_threadpool(func, *args)
        except GatewayError:
            raise
        except Exception as exc:
            raise wrap_delegated_error(exc, operation) from exc

    async def _json_body(self, request: Request) -> Any:
        raw = await request.body()
        if not raw:
            raise ValidationError("request body must be a JSON document")
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise ValidationError(f"malformed JSON body: {exc}") from exc

    async def _stop_listener(self) -> None:
        logger.debug("Stopping rest server")
        if self.shutdown is not None:
            await self.shutdown()

    # -- routes -----------------------------------------------------------

    async def check_status(self) -> Response:
        try:
            await self.datastore.init()
        except Exception as exc:
            error = DatastoreInitError(f"datastore initialization failed: {error_message(exc)}")
            logger.error("{}", error.message)
            logger.critical("Database initialize failed, stopping rest server...")
            self.accepting = False
            return _error_json(error, background=BackgroundTask(self._stop_listener))
        return _empty()

    async def get_experiment_profile(self) -> JSONResponse:
        profile = await self._delegate("get_experiment_profile", self.manager.get_experiment_profile)
        return JSONResponse(_serialize(profile))

    async def update_experiment_profile(
        self, request: Request, update_type: Optional[str] = None
    ) -> Response:
        profile = await self._json_body(request)
        await self._delegate(
            "update_experiment_profile", self.manager.update_experiment_profile, profile, update_type
        )
        return _empty()

    async def start_experiment(self, request: Request) -> Response:
        if self.experiment_mode is ExperimentMode.NEW:
            profile = await self._json_body(request)
            experiment_id = await self._delegate(
                "start_experiment", self.manager.start_experiment, profile
            )
            return JSONResponse({"experiment_id": experiment_id})
        await self._delegate("resume_experiment", self.manager.resume_experiment)
        return _empty()

    async def stop_experiment(self) -> Response:
        # Phase 1: drain TensorBoard sessions. Phase 2: stop the engine.
        report = await self._offload("stop_all_tensorboards", self.sessions.stop_all)
        if not report.ok:
            logger.warning("TensorBoard cleanup left failures: {}", report.failures)
        await self._delegate("stop_experiment", self.manager.stop_experiment)

        self.accepting = False
        background = BackgroundTask(self._stop_listener)
        if not report.ok:
            error = SessionCleanupError(
                f"experiment stopped but {len(report.failures)} TensorBoard session(s) "
                f"failed to terminate: {', '.join(sorted(report.failures))}",
                details=report.to_dict(),
            )
            return _error_json(error, background=background)
        return _empty(background=background)

    async def get_trial_job_statistics(self) -> JSONResponse:
        statistics = await self._delegate(
            "get_trial_job_statistics", self.manager.get_trial_job_statistics
        )
        return JSONResponse(_serialize(list(statistics)))

    async def set_cluster_metadata(self, request: Request) -> Response:
        metadata = await self._json_body(request)
        if not isinstance(metadata, dict):
            raise ValidationError("cluster metadata must be a JSON object")
        # Applied in order; no rollback of keys already applied.
        for key, value in metadata.items():
            await self._delegate(
                "set_cluster_metadata", self.manager.set_cluster_metadata, key, json.dumps(value)
            )
        return _empty()

    async def get_cluster_metadata(self, key: str) -> JSONResponse:
        raw = await self._delegate("get_cluster_metadata", self.manager.get_cluster_metadata, key)
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            value = raw
        return JSONResponse(jsonable_encoder(value))

    async def list_trial_jobs(self, status: Optional[str] = None) -> JSONResponse:
        jobs = await self._delegate("list_trial_jobs", self.manager.list_trial_jobs, status)
        return JSONResponse([render_trial_job(job) for job in jobs])

    async def get_trial_job(self, job_id: str) -> JSONResponse:
        job = await self._delegate("get_trial_job", self.manager.get_trial_job, job_id)
        return JSONResponse(render_trial_job(job))

    async def add_trial_job(self, request: Request) -> Response:
        # Schema-less job description, forwarded as serialized JSON.
        spec = await self._json_body(request)
        await self._delegate(
            "add_customized_trial_job", self.manager.add_customized_trial_job, json.dumps(spec)
        )
        return _empty()

    async def cancel_trial_job(self, job_id: str) -> Response:
        await self._delegate("cancel_trial_job_by_user", self.manager.cancel_trial_job_by_user, job_id)
        return _empty()

    async def get_metric_data(
        self, job_id: str, metric_type: Optional[str] = Query(default=None, alias="type")
    ) -> JSONResponse:
        records = await self._delegate(
            "get_metric_data", self.manager.get_metric_data, job_id, metric_type
        )
        return JSONResponse(_serialize(list(records)))

    async def list_tensorboards(self) -> JSONResponse:
        sessions: List[Dict[str, Any]] = await self._offload(
            "list_tensorboards", self.sessions.list_sessions
        )
        return JSONResponse(sessions)

    async def start_tensorboard(
        self, job_ids: str = Query(...), tensorboard_cmd: Optional[str] = None
    ) -> JSONResponse:
        endpoint = await self._offload(
            "start_tensorboard", self.sessions.start, job_ids, tensorboard_cmd
        )
        return JSONResponse({"endPoint": endpoint})

    async def stop_tensorboard(self, endpoint: str = Query(...)) -> Response:
        await self._offload("stop_tensorboard", self.sessions.stop, endpoint)
        return _empty()


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {"error": str(exc.detail or "request failed")},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


def create_app(
    manager: Manager,
    datastore: DataStore,
    *,
    experiment_mode: Union[ExperimentMode, str] = ExperimentMode.NEW,
    sessions: Optional[TensorBoardSessionManager] = None,
    shutdown: Optional[ShutdownHook] = None,
    config: Optional[GatewayConfig] = None,
    metrics: Optional[GatewayMetrics] = None,
) -> FastAPI:
    """Create the FastAPI application serving the gateway routes."""
    config = config or get_config()
    if metrics is None and config.monitoring.enable_prometheus:
        metrics = GatewayMetrics()
    if sessions is None:
        sessions = TensorBoardSessionManager(config=config.tensorboard, metrics=metrics)

    handler = RestHandler(
        manager,
        datastore,
        sessions,
        experiment_mode=experiment_mode,
        shutdown=shutdown,
    )

    app = FastAPI(
        title="trialgate REST API",
        description="Experiment, trial-job and TensorBoard control plane.",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.add_middleware(RequestGateMiddleware, handler=handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
    )
    app.add_exception_handler(GatewayError, handler.handle_error)
    app.add_exception_handler(RequestValidationError, handler.handle_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.include_router(handler.create_router())

    if metrics is not None:

        @app.middleware("http")
        async def record_request(request: Request, call_next):
            response = await call_next(request)
            route = request.scope.get("route")
            metrics.record_request(
                request.method, getattr(route, "path", request.url.path), response.status_code
            )
            return response

        if config.monitoring.enable_prometheus:

            @app.get("/metrics", include_in_schema=False)
            async def prometheus_metrics() -> Response:
                return Response(metrics.exposition(), media_type=metrics.content_type)

    app.state.handler = handler
    app.state.sessions = sessions
    return app
