from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Optional

import httpx
from pydantic import ValidationError

from .config import GatewayConfig, ProviderConfig, ResolvedTarget
from .errors import (
    GatewayError,
    err_invalid_request,
    err_model_not_found,
    err_upstream,
    err_upstream_unavailable,
)
from .metrics import MetricsAggregator, MetricSample
from .models import ChatCompletionRequest
from .normalization import as_stream_chunk, normalize_response
from .registry import ModelRegistry
from .resolver import Resolver
from .streaming import StreamRelay
from .transform import RequestTransformer

logger = logging.getLogger(__name__)


@dataclass
class ChatResult:
    """Outcome of one dispatched chat request.

    Exactly one of ``body`` (buffered JSON) or ``chunks`` (SSE bytes) is set.
    """

    target: ResolvedTarget
    started_at: float
    body: Optional[dict[str, Any]] = None
    chunks: Optional[AsyncGenerator[bytes, None]] = None
    relay: Optional[StreamRelay] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def stream(self) -> bool:
        return self.chunks is not None


class ChatForwarder:
    def __init__(
        self,
        cfg: GatewayConfig,
        registry: ModelRegistry,
        client: httpx.AsyncClient,
        metrics: MetricsAggregator | None = None,
    ):
        self.cfg = cfg
        self.registry = registry
        self.client = client
        self.metrics = metrics
        self.resolver = Resolver(cfg.providers, registry, cfg.overrides)
        self.transformer = RequestTransformer(cfg)

    @staticmethod
    def validate(payload: Any) -> ChatCompletionRequest:
        if not isinstance(payload, dict):
            raise err_invalid_request("Request body must be a JSON object")
        try:
            return ChatCompletionRequest.model_validate(payload)
        except ValidationError as exc:
            details = [
                {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                for e in exc.errors()
            ]
            raise err_invalid_request("Invalid chat completion request", details) from exc

    def resolve(self, model: str) -> ResolvedTarget:
        snapshot = self.registry.snapshot()
        target = self.resolver.resolve(model, snapshot)
        if target is None:
            logger.info("[forwarder] No provider serves model '%s'", model)
            raise err_model_not_found(model, snapshot.available_models())
        return target

    async def handle_chat(
        self, payload: Any, request: ChatCompletionRequest | None = None
    ) -> ChatResult:
        if request is None:
            request = self.validate(payload)
        started_at = time.time()
        target = self.resolve(request.model)
        stream = bool(request.stream)
        try:
            return await self._dispatch(payload, request, target, started_at)
        except GatewayError as exc:
            self.record_metrics(
                request.model, target.provider_id, started_at, stream, exc.status_code
            )
            raise

    async def _dispatch(
        self,
        payload: dict[str, Any],
        request: ChatCompletionRequest,
        target: ResolvedTarget,
        started_at: float,
    ) -> ChatResult:
        provider = self.cfg.provider(target.provider_id)
        outbound, headers = self.transformer.build(payload, request, target, provider)
        logger.info(
            "[forwarder] '%s' -> provider '%s' model '%s'",
            request.model,
            provider.id,
            target.canonical_model,
        )
        result = ChatResult(target=target, started_at=started_at)

        if not request.stream:
            result.body = await self._post_buffered(provider, target, outbound, headers)
            return result

        if provider.supports_streaming:
            relay = await self._open_stream(provider, outbound, headers)
            result.relay = relay
            result.chunks = relay.iter_chunks()
            return result

        # Provider cannot stream: answer buffered, re-emitted as one SSE event.
        norm = await self._post_buffered(provider, target, outbound, headers)
        result.chunks = _single_event_stream(norm)
        result.meta["emulated_stream"] = True
        return result

    async def _post_buffered(
        self,
        provider: ProviderConfig,
        target: ResolvedTarget,
        outbound: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        try:
            resp = await self.client.post(
                provider.completion_endpoint,
                json=outbound,
                headers=headers,
                timeout=httpx.Timeout(provider.timeout_s),
            )
        except httpx.TimeoutException as exc:
            logger.warning("[forwarder] Provider '%s' timed out", provider.id)
            raise err_upstream_unavailable(provider.id, "request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("[forwarder] Provider '%s' unreachable: %s", provider.id, exc)
            raise err_upstream_unavailable(
                provider.id, str(exc) or type(exc).__name__
            ) from exc
        if not resp.is_success:
            logger.warning(
                "[forwarder] Provider '%s' answered HTTP %s: %s",
                provider.id,
                resp.status_code,
                resp.text[:200],
            )
            raise err_upstream(
                provider.id,
                resp.status_code,
                resp.content,
                resp.headers.get("content-type"),
            )
        try:
            return normalize_response(
                resp.json(),
                model=target.canonical_model,
                reasoning_delimiter=provider.reasoning_delimiter,
            )
        except ValueError as exc:
            raise err_upstream_unavailable(
                provider.id, f"malformed response body ({exc})"
            ) from exc

    async def _open_stream(
        self,
        provider: ProviderConfig,
        outbound: dict[str, Any],
        headers: dict[str, str],
    ) -> StreamRelay:
        request = self.client.build_request(
            "POST",
            provider.completion_endpoint,
            json=outbound,
            headers=headers,
            timeout=httpx.Timeout(provider.timeout_s),
        )
        try:
            resp = await self.client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise err_upstream_unavailable(provider.id, "request timed out") from exc
        except httpx.HTTPError as exc:
            raise err_upstream_unavailable(
                provider.id, str(exc) or type(exc).__name__
            ) from exc
        if not resp.is_success:
            # Nothing sent to the client yet, so the real status can still go out.
            try:
                body = await resp.aread()
            except httpx.HTTPError:
                body = b""
            finally:
                await resp.aclose()
            raise err_upstream(
                provider.id, resp.status_code, body, resp.headers.get("content-type")
            )
        return StreamRelay(resp, provider.id, self.cfg.stream_queue_size)

    def record_metrics(
        self,
        model: str,
        provider: str,
        started_at: float,
        stream: bool,
        status: int,
        bytes_out: int = 0,
    ) -> None:
        if self.metrics is None:
            return
        self.metrics.add(
            MetricSample(
                ts=time.time(),
                model=model,
                provider=provider,
                duration_ms=(time.time() - started_at) * 1000,
                stream=stream,
                status=status,
                bytes_out=bytes_out,
            )
        )


async def _single_event_stream(norm: dict[str, Any]) -> AsyncGenerator[bytes, None]:
    chunk = json.dumps(as_stream_chunk(norm), ensure_ascii=False)
    yield f"data: {chunk}\n\n".encode()
    yield b"data: [DONE]\n\n"
