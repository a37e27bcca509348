"""Runs tool invocations through the host application's request pipeline."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Mapping, Optional

from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.types import ASGIApp, Message

from .governance import CallerIdentity
from .logging import redact_payload
from .models import DispatchResult, ToolDescriptor
from .synthetic import SyntheticRequest, SyntheticRequestBuilder

logger = logging.getLogger(__name__)


class DispatchCancelledError(Exception):
    pass


class ExecutionScope:
    """Per-dispatch state plus an exit stack that is closed on every exit path.

    Host dependencies can reach the scope through
    `request.state.mcp_execution_scope` and push cleanup callbacks onto
    `exit_stack`; they run when the dispatch finishes, fails or is cancelled.
    """

    def __init__(self, seed: Optional[Mapping[str, Any]] = None) -> None:
        self.state: Dict[str, Any] = dict(seed or {})
        self.state["mcp_execution_scope"] = self
        self.exit_stack = AsyncExitStack()
        self.closed = False

    async def __aenter__(self) -> "ExecutionScope":
        await self.exit_stack.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:  # type: ignore[no-untyped-def]
        try:
            return await self.exit_stack.__aexit__(exc_type, exc, tb)
        finally:
            self.closed = True


class ResponseCapture:
    """ASGI `send` callable that buffers the response instead of writing it."""

    def __init__(self) -> None:
        self.status_code: Optional[int] = None
        self.raw_headers: List[Any] = []
        self._chunks: List[bytes] = []

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status_code = message["status"]
            self.raw_headers = list(message.get("headers") or [])
        elif message["type"] == "http.response.body":
            self._chunks.append(message.get("body", b""))

    @property
    def content_type(self) -> Optional[str]:
        return Headers(raw=self.raw_headers).get("content-type")

    def to_result(self) -> DispatchResult:
        if self.status_code is None:
            return DispatchResult.failure(500, "Internal error: no response was produced", "text/plain")
        content = b"".join(self._chunks).decode("utf-8", errors="replace")
        if 200 <= self.status_code < 300:
            return DispatchResult.success(self.status_code, content, self.content_type)
        return DispatchResult.failure(
            self.status_code,
            content or f"Request failed with status {self.status_code}",
            self.content_type,
        )


class ToolDispatcher:
    def __init__(self, app: ASGIApp, request_builder: SyntheticRequestBuilder) -> None:
        self.app = app
        self.request_builder = request_builder

    async def dispatch(
        self,
        descriptor: ToolDescriptor,
        arguments: Mapping[str, Any],
        cancel_event: Optional[asyncio.Event] = None,
        source_request: Optional[Request] = None,
        identity: Optional[CallerIdentity] = None,
        correlation_id: Optional[str] = None,
    ) -> DispatchResult:
        logger.info(
            "Executing tool=%s via %s %s payload=%s",
            descriptor.name,
            descriptor.http_method,
            descriptor.path_template,
            redact_payload(arguments),
        )
        seed = source_request.scope.get("state") if source_request is not None else None

        async with ExecutionScope(seed) as scope:
            try:
                synthetic = self.request_builder.build(
                    descriptor,
                    arguments,
                    scope.state,
                    source_request=source_request,
                    identity=identity,
                    correlation_id=correlation_id,
                )
            except (ValueError, TypeError) as exc:
                logger.warning("Failed to bind arguments for tool=%s: %s", descriptor.name, exc)
                return DispatchResult.failure(400, f"Failed to bind arguments: {exc}", "text/plain")

            capture = ResponseCapture()
            try:
                await self._invoke(synthetic, capture, cancel_event)
            except DispatchCancelledError:
                raise
            except Exception as exc:
                logger.exception("Unhandled exception while dispatching tool=%s", descriptor.name)
                return DispatchResult.failure(500, f"Internal error: {exc}", "text/plain")
            finally:
                synthetic.close()

            return capture.to_result()

    async def _invoke(
        self,
        synthetic: SyntheticRequest,
        capture: ResponseCapture,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        if cancel_event is None:
            await self.app(synthetic.scope, synthetic.receive, capture)
            return
        if cancel_event.is_set():
            raise DispatchCancelledError("dispatch cancelled before it started")

        invocation = asyncio.ensure_future(self.app(synthetic.scope, synthetic.receive, capture))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {invocation, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not invocation.done():
                invocation.cancel()
                await asyncio.gather(invocation, return_exceptions=True)

        if invocation not in done:
            raise DispatchCancelledError("dispatch cancelled by the caller")
        invocation.result()
