"""HTTP API for the governance engine.

``POST /v1/governance`` takes ``{"action": ..., <fields>}``; the bearer
credential is resolved to an owner before any action runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from steward.api.auth import AuthProvider, BearerTokenAuthProvider
from steward.api.handler import (
    integer,
    obj,
    parse_request_payload,
    raw,
    string_list,
    text,
    timestamp,
    to_json,
)
from steward.engine import GovernanceEngine
from steward.governance.errors import GovernanceError, InvalidRequest, Unauthorized

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]


def error_response(error: GovernanceError) -> JSONResponse:
    return JSONResponse({"error": error.code, "message": error.message}, status_code=error.http_status)


class GovernanceAPIServer:
    """Starlette application exposing every governance action."""

    def __init__(
        self,
        engine: GovernanceEngine,
        *,
        auth_provider: AuthProvider | None = None,
        host: str | None = None,
        port: int | None = None,
        max_body_bytes: int | None = None,
        cors_origins: list[str] | None = None,
        manage_engine: bool = True,
    ) -> None:
        api_cfg = engine.config.api
        self._engine = engine
        self._auth_provider = auth_provider or BearerTokenAuthProvider(api_cfg.tokens)
        self._host = host or api_cfg.host
        self._port = port or api_cfg.port
        self._max_body_bytes = max_body_bytes or api_cfg.max_body_bytes
        self._manage_engine = manage_engine
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None
        self._actions: dict[str, ActionHandler] = {
            "create": self._create,
            "get": self._get,
            "list": self._list,
            "close": self._close,
            "add_task": self._add_task,
            "list_tasks": self._list_tasks,
            "get_task": self._get_task,
            "start_task": self._start_task,
            "complete_task": self._complete_task,
            "fail_task": self._fail_task,
            "queue_status": self._queue_status,
            "list_approvals": self._list_approvals,
            "decide": self._decide,
            "add_rule": self._add_rule,
            "update_rule": self._update_rule,
            "disable_rule": self._disable_rule,
            "enable_rule": self._enable_rule,
            "list_rules": self._list_rules,
            "get_cost": self._get_cost,
            "get_audit": self._get_audit,
            "verify_audit": self._verify_audit,
        }
        self._app = Starlette(
            routes=[
                Route("/v1/governance", endpoint=self._dispatch, methods=["POST"]),
                Route("/healthz", endpoint=self._healthz, methods=["GET"]),
            ],
            lifespan=self._lifespan,
        )
        origins = cors_origins if cors_origins is not None else api_cfg.cors_origins
        if origins:
            self._app.add_middleware(
                CORSMiddleware,
                allow_origins=origins,
                allow_methods=["GET", "POST"],
                allow_headers=["Authorization", "Content-Type"],
            )

    @property
    def app(self) -> Starlette:
        return self._app

    @property
    def actions(self) -> list[str]:
        return sorted(self._actions)

    @contextlib.asynccontextmanager
    async def _lifespan(self, _app: Starlette) -> AsyncIterator[None]:
        if self._manage_engine:
            await self._engine.start()
        try:
            yield
        finally:
            if self._manage_engine:
                await self._engine.stop()

    async def start(self) -> None:
        if self._server_task is not None:
            return
        config = uvicorn.Config(self._app, host=self._host, port=self._port, log_level="warning")
        self._server = uvicorn.Server(config=config)
        self._server_task = asyncio.create_task(self._server.serve())

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            await self._server_task
            self._server_task = None
            self._server = None

    async def _healthz(self, _request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    async def _dispatch(self, request: Request) -> JSONResponse:
        auth = await self._auth_provider.authenticate(request)
        if not auth.ok or not auth.identity:
            # No owner chain to record into; the attempt is only logged.
            error = Unauthorized(auth.reason or "auth_failed")
            logger.warning("unauthenticated governance request: %s", error.message)
            return error_response(error)
        identity = auth.identity

        if request.headers.get("content-length"):
            with contextlib.suppress(ValueError):
                if int(request.headers["content-length"]) > self._max_body_bytes:
                    return JSONResponse(
                        {"error": "payload_too_large", "message": "request body too large"},
                        status_code=413,
                    )

        action = "request"
        try:
            parsed = await parse_request_payload(request)
            action = parsed.action
            handler = self._actions.get(action)
            if handler is None:
                raise InvalidRequest(f"unknown action: {action}")
            result = await handler(identity, parsed.fields)
        except GovernanceError as exc:
            if not exc.audited:
                await self._engine.record_rejection(identity, f"api.{action}", "request", None, exc)
            return error_response(exc)
        return JSONResponse(to_json(result))

    # ------------------------------------------------------------------ sessions

    async def _create(self, identity: str, body: dict[str, Any]) -> dict[str, Any]:
        domain = text(body, "domain")
        provider = text(body, "provider", required=False)
        metadata = obj(body, "metadata")
        session_type = text(body, "sessionType", required=False)
        tags = string_list(body, "tags")
        session = await self._engine.open_session(
            identity, domain, provider, metadata, session_type=session_type, tags=tags
        )
        return {"sessionId": session.id, "status": session.status.value, "provider": session.provider}

    async def _get(self, identity: str, body: dict[str, Any]) -> Any:
        session_id = text(body, "sessionId")
        return await self._engine.get_session(identity, session_id)

    async def _list(self, identity: str, body: dict[str, Any]) -> Any:
        limit = integer(body, "limit")
        offset = integer(body, "offset", 0)
        return await self._engine.list_sessions(identity, limit, offset or 0)

    async def _close(self, identity: str, body: dict[str, Any]) -> Any:
        session_id = text(body, "sessionId")
        return await self._engine.close_session(identity, session_id)

    # ------------------------------------------------------------------ tasks

    async def _add_task(self, identity: str, body: dict[str, Any]) -> dict[str, Any]:
        session_id = text(body, "sessionId")
        task_type = text(body, "taskType")
        cost_estimate = raw(body, "costEstimate")
        metadata = obj(body, "metadata")
        priority = integer(body, "priority", 5)
        depends_on = text(body, "dependsOn", required=False)
        task = await self._engine.submit_task(
            identity,
            session_id,
            task_type,
            0 if cost_estimate is None else cost_estimate,
            metadata,
            priority if priority is not None else 5,
            depends_on=depends_on,
        )
        result: dict[str, Any] = {"taskId": task.id, "status": task.status.value}
        if task.approval_id is not None:
            result["approvalId"] = task.approval_id
        return result

    async def _list_tasks(self, identity: str, body: dict[str, Any]) -> Any:
        session_id = text(body, "sessionId")
        status = text(body, "status", required=False)
        return await self._engine.list_tasks(identity, session_id, status)

    async def _get_task(self, identity: str, body: dict[str, Any]) -> Any:
        return await self._engine.get_task(identity, text(body, "taskId"))

    async def _start_task(self, identity: str, body: dict[str, Any]) -> Any:
        return await self._engine.start_task(identity, text(body, "taskId"))

    async def _complete_task(self, identity: str, body: dict[str, Any]) -> Any:
        task_id = text(body, "taskId")
        actual_cost = raw(body, "actualCost")
        if actual_cost is None:
            raise InvalidRequest("actualCost is required")
        return await self._engine.complete_task(identity, task_id, actual_cost)

    async def _fail_task(self, identity: str, body: dict[str, Any]) -> Any:
        task_id = text(body, "taskId")
        reason = text(body, "reason")
        return await self._engine.fail_task(identity, task_id, reason)

    async def _queue_status(self, identity: str, body: dict[str, Any]) -> Any:
        return await self._engine.queue_status(identity, text(body, "sessionId"))

    # ------------------------------------------------------------------ approvals

    async def _list_approvals(self, identity: str, body: dict[str, Any]) -> Any:
        status = text(body, "status", required=False)
        return await self._engine.list_approvals(identity, status)

    async def _decide(self, identity: str, body: dict[str, Any]) -> Any:
        approval_id = text(body, "approvalId")
        decision = text(body, "decision")
        reason = text(body, "reason", required=False)
        return await self._engine.decide(identity, approval_id, decision, reason)

    # ------------------------------------------------------------------ rules

    async def _add_rule(self, identity: str, body: dict[str, Any]) -> Any:
        condition = obj(body, "condition")
        rule_action = text(body, "ruleAction", required=False) or "require_approval"
        threshold = raw(body, "threshold")
        rule_id = text(body, "ruleId", required=False)
        return await self._engine.add_rule(identity, condition, rule_action, threshold, rule_id)

    async def _update_rule(self, identity: str, body: dict[str, Any]) -> Any:
        rule_id = text(body, "ruleId")
        return await self._engine.update_rule(
            identity,
            rule_id,
            condition=obj(body, "condition"),
            action=text(body, "ruleAction", required=False),
            threshold=raw(body, "threshold"),
            expected_version=integer(body, "expectedVersion"),
        )

    async def _disable_rule(self, identity: str, body: dict[str, Any]) -> Any:
        rule_id = text(body, "ruleId")
        expected = integer(body, "expectedVersion")
        return await self._engine.disable_rule(identity, rule_id, expected)

    async def _enable_rule(self, identity: str, body: dict[str, Any]) -> Any:
        rule_id = text(body, "ruleId")
        expected = integer(body, "expectedVersion")
        return await self._engine.enable_rule(identity, rule_id, expected)

    async def _list_rules(self, identity: str, body: dict[str, Any]) -> Any:
        rule_id = text(body, "ruleId", required=False)
        return await self._engine.list_rules(identity, rule_id)

    # ------------------------------------------------------------------ cost & audit

    async def _get_cost(self, identity: str, body: dict[str, Any]) -> Any:
        return await self._engine.get_cost(identity)

    async def _get_audit(self, identity: str, body: dict[str, Any]) -> Any:
        from_time = timestamp(body, "fromTime")
        to_time = timestamp(body, "toTime")
        return await self._engine.get_audit(identity, from_time, to_time)

    async def _verify_audit(self, identity: str, body: dict[str, Any]) -> Any:
        return await self._engine.verify_audit(identity)


def create_app(engine: GovernanceEngine, **kwargs: Any) -> Starlette:
    """Build the Starlette app for ``engine``."""
    return GovernanceAPIServer(engine, **kwargs).app
