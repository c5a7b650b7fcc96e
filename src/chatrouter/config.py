from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ProviderConfig:
    """Static description of one upstream chat-completion provider."""

    id: str
    completion_endpoint: str
    discovery_endpoint: Optional[str] = None
    static_headers: Dict[str, str] = field(default_factory=dict)
    timeout_s: float = 120.0
    prefix: Optional[str] = None
    supports_streaming: bool = True
    priority: int = 100
    static_models: tuple[str, ...] = ()
    protocol: str = "openai"
    api_key_env: Optional[str] = None
    reasoning_delimiter: Optional[str] = None


@dataclass(frozen=True)
class ResolvedTarget:
    provider_id: str
    canonical_model: str


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8200
    enable_metrics: bool = False
    log_path: str = "logs/chat_router.jsonl"
    max_log_bytes: int = 25_000_000
    refresh_interval_s: float = 300.0
    stream_queue_size: int = 64
    default_temperature: float = 0.7
    min_temperature: float = 0.0
    max_temperature: float = 2.0
    default_max_tokens: int = 4096
    max_tokens_limit: int = 32_768
    providers: List[ProviderConfig] = field(default_factory=list)
    # Keys are lowercase client-facing model names.
    overrides: Dict[str, ResolvedTarget] = field(default_factory=dict)
    config_file_path: Optional[str] = None

    @classmethod
    def load(cls) -> "GatewayConfig":
        from .config_loader import load_gateway_config

        return load_gateway_config()

    def provider(self, provider_id: str) -> ProviderConfig:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        raise KeyError(provider_id)
