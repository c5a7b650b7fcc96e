from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import GatewayConfig
from .errors import GatewayError, UpstreamError, err_invalid_request
from .forwarder import ChatForwarder, ChatResult
from .logging_utils import JsonlLogger, configure_logging
from .metrics import MetricsAggregator
from .models import ChatCompletionRequest
from .registry import ModelRegistry, RegistryRefresher
from .streaming import STREAM_HEADERS

logger = logging.getLogger(__name__)


def _error_response(exc: GatewayError) -> Response:
    if isinstance(exc, UpstreamError):
        # Relay the provider's own status and body untouched.
        return Response(
            content=exc.body,
            status_code=exc.status_code,
            media_type=exc.content_type,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.detail)


def _wants_stream(request: ChatCompletionRequest | None) -> bool:
    return bool(request is not None and request.stream)


def create_app(
    cfg: GatewayConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the gateway app.

    ``transport`` replaces the network layer of the shared outbound client and
    is how tests stand in for upstream providers.
    """
    cfg = cfg or GatewayConfig.load()
    client = httpx.AsyncClient(transport=transport)
    registry = ModelRegistry(cfg.providers, client)
    refresher = RegistryRefresher(registry, cfg.refresh_interval_s)
    metrics = MetricsAggregator()
    request_log = JsonlLogger(cfg.log_path, cfg.max_log_bytes)
    forwarder = ChatForwarder(cfg, registry, client, metrics)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if cfg.host != "127.0.0.1":
            logger.warning(
                "[app] Listening on %s without client auth; put a reverse proxy in front.",
                cfg.host,
            )
        refresher.start()
        try:
            yield
        finally:
            await refresher.stop()
            await client.aclose()

    app = FastAPI(title="chatrouter", version="0.1", lifespan=lifespan)
    app.state.cfg = cfg
    app.state.registry = registry
    app.state.refresher = refresher
    app.state.forwarder = forwarder
    app.state.metrics = metrics

    def _log_request(
        payload: Any, result: ChatResult | None, status: int, stream: bool
    ) -> None:
        model = payload.get("model") if isinstance(payload, dict) else None
        request_log.log(
            {
                "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
                "model_requested": model,
                "provider": result.target.provider_id if result else None,
                "upstream_model": result.target.canonical_model if result else None,
                "stream": stream,
                "status": status,
            }
        )

    @app.post("/v1/chat/completions")
    async def chat_completions(req: Request):
        try:
            payload = await req.json()
        except ValueError:
            exc = err_invalid_request("Request body is not valid JSON")
            return JSONResponse(status_code=exc.status_code, content=exc.detail)

        request = None
        try:
            request = forwarder.validate(payload)
            result = await forwarder.handle_chat(payload, request)
        except GatewayError as exc:
            _log_request(payload, None, exc.status_code, _wants_stream(request))
            return _error_response(exc)
        except Exception:  # noqa: BLE001
            logger.exception("[app] Unhandled error while serving chat completion")
            _log_request(payload, None, 500, _wants_stream(request))
            return JSONResponse(
                status_code=500,
                content={
                    "error": {
                        "type": "internal_error",
                        "code": 500,
                        "message": "Internal gateway error",
                    }
                },
            )

        model = request.model
        provider_id = result.target.provider_id
        if not result.stream:
            forwarder.record_metrics(model, provider_id, result.started_at, False, 200)
            _log_request(payload, result, 200, False)
            return JSONResponse(content=result.body)

        async def streamer():
            try:
                async for chunk in result.chunks:
                    yield chunk
            finally:
                # Client gone or upstream done: release the upstream promptly.
                await result.chunks.aclose()
                sent = result.relay.bytes_forwarded if result.relay else 0
                forwarder.record_metrics(
                    model, provider_id, result.started_at, True, 200, sent
                )
                _log_request(payload, result, 200, True)

        return StreamingResponse(
            streamer(), media_type="text/event-stream", headers=STREAM_HEADERS
        )

    @app.get("/v1/models")
    async def list_models_api():
        data = [
            {
                "id": name,
                "object": "model",
                "created": 0,
                "owned_by": provider_id,
                "extensions": {
                    "provider": provider_id,
                    "prefixed_id": f"{cfg.provider(provider_id).prefix or ''}{name}",
                    "source": source,
                },
            }
            for provider_id, name, source in registry.snapshot().listing()
        ]
        return {"object": "list", "data": data}

    @app.get("/health")
    @app.get("/v1/health")
    async def health():
        snapshot = registry.snapshot()
        providers = {}
        for provider_id in registry.provider_ids:
            outcome = registry.last_outcome(provider_id)
            providers[provider_id] = {
                "models_loaded": bool(snapshot.dynamic.get(provider_id)),
                "static_models": len(snapshot.static.get(provider_id) or {}),
                "last_refresh": outcome.to_dict() if outcome else None,
            }
        return {
            "status": "ok",
            "uptime_seconds": metrics.summary().get("uptime_seconds"),
            "providers": providers,
        }

    @app.get("/v1/metrics")
    async def metrics_api():
        if not cfg.enable_metrics:
            return JSONResponse(
                status_code=404,
                content={
                    "error": {
                        "type": "disabled",
                        "code": 404,
                        "message": "Metrics disabled",
                    }
                },
            )
        return metrics.summary()

    return app


def main():
    import uvicorn

    cfg = GatewayConfig.load()
    configure_logging("chat_router")
    logger.info(
        "[app] Loaded %d provider(s) from %s",
        len(cfg.providers),
        cfg.config_file_path,
    )
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port)


if __name__ == "__main__":  # pragma: no cover
    main()
