from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class GatewayError(HTTPException):
    def __init__(
        self,
        status_code: int,
        err_type: str,
        message: str,
        hint: str | None = None,
        extra: dict[str, Any] | None = None,
    ):
        payload: dict[str, Any] = {
            "error": {"type": err_type, "code": status_code, "message": message}
        }
        if hint:
            payload["error"]["hint"] = hint
        if extra:
            payload.update(extra)
        super().__init__(status_code=status_code, detail=payload)


class UpstreamError(GatewayError):
    """Provider answered with a failure status; its body is relayed verbatim."""

    def __init__(
        self,
        provider: str,
        status_code: int,
        body: bytes,
        content_type: str | None = None,
    ):
        super().__init__(
            status_code,
            "upstream_error",
            f"Provider '{provider}' returned HTTP {status_code}",
        )
        self.provider = provider
        self.body = body
        self.content_type = content_type or "application/json"


def err_invalid_request(message: str, details: Any = None) -> GatewayError:
    extra = {"details": details} if details is not None else None
    return GatewayError(400, "invalid_request", message, extra=extra)


def err_model_not_found(model: str, available: dict[str, list[str]]) -> GatewayError:
    return GatewayError(
        400,
        "model_not_found",
        f"Model '{model}' is not served by any provider",
        "Pick one of available_models or check /v1/models",
        extra={"available_models": available},
    )


def err_upstream(
    provider: str, status_code: int, body: bytes, content_type: str | None = None
) -> UpstreamError:
    return UpstreamError(provider, status_code, body, content_type)


def err_upstream_unavailable(provider: str, message: str) -> GatewayError:
    return GatewayError(
        500, "upstream_error", f"Provider '{provider}' request failed: {message}"
    )
