from __future__ import annotations

import logging
import os
from typing import Any, Optional

from .config import GatewayConfig, ProviderConfig, ResolvedTarget
from .models import ChatCompletionRequest

logger = logging.getLogger(__name__)

# Headers some protocols require on every call, on top of the bearer token.
_PROTOCOL_HEADERS: dict[str, dict[str, str]] = {
    "openai": {},
    "openrouter": {
        "HTTP-Referer": "https://github.com/chatrouter/chatrouter",
        "X-Title": "chatrouter",
    },
}


def build_headers(provider: ProviderConfig) -> dict[str, str]:
    """Static headers, then auth, then protocol headers (which always win)."""
    headers: dict[str, str] = {"Content-Type": "application/json"}
    headers.update(provider.static_headers)
    if provider.api_key_env:
        key = os.environ.get(provider.api_key_env)
        if key:
            headers["Authorization"] = f"Bearer {key}"
        else:
            logger.warning(
                "[transform] %s is unset; calling provider '%s' without a token",
                provider.api_key_env,
                provider.id,
            )
    headers.update(_PROTOCOL_HEADERS.get(provider.protocol, {}))
    return headers


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class RequestTransformer:
    def __init__(self, cfg: GatewayConfig):
        self.cfg = cfg

    def _temperature(self, value: Optional[float]) -> float:
        if value is None:
            return self.cfg.default_temperature
        return float(_clamp(value, self.cfg.min_temperature, self.cfg.max_temperature))

    def _max_tokens(self, value: Optional[int]) -> int:
        if value is None:
            return self.cfg.default_max_tokens
        return int(_clamp(value, 1, self.cfg.max_tokens_limit))

    def build_payload(
        self,
        payload: dict[str, Any],
        request: ChatCompletionRequest,
        target: ResolvedTarget,
        provider: ProviderConfig,
    ) -> dict[str, Any]:
        """Copy the client body, with typed values taken from the validated ``request``."""
        outbound = dict(payload)
        outbound["model"] = target.canonical_model
        outbound["temperature"] = self._temperature(request.temperature)
        outbound["max_tokens"] = self._max_tokens(request.max_tokens)
        if "stream" in outbound or not provider.supports_streaming:
            outbound["stream"] = bool(request.stream) and provider.supports_streaming
        return outbound

    def build(
        self,
        payload: dict[str, Any],
        request: ChatCompletionRequest,
        target: ResolvedTarget,
        provider: ProviderConfig,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        return (
            self.build_payload(payload, request, target, provider),
            build_headers(provider),
        )
