from __future__ import annotations

import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .config import GatewayConfig, ProviderConfig, ResolvedTarget

CONFIG_FILE_ENV = "CHAT_ROUTER_CONFIG_FILE"
ENV_PREFIX = "CHAT_ROUTER_"
DEFAULT_CONFIG_PATH = Path("configs/chat_router.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "server": [
        "host",
        "port",
        "enable_metrics",
        "log_path",
        "max_log_bytes",
    ],
    "registry": ["refresh_interval_s"],
    "streaming": ["stream_queue_size"],
    "generation": [
        "default_temperature",
        "min_temperature",
        "max_temperature",
        "default_max_tokens",
        "max_tokens_limit",
    ],
}

_PROTOCOLS = {"openai", "openrouter"}


class ConfigError(ValueError):
    """Raised when the gateway configuration is inconsistent."""


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value))


def _coerce_float(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value))


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


_CASTERS: dict[str, Callable[[Any], Any]] = {
    "bool": _coerce_bool,
    "int": _coerce_int,
    "float": _coerce_float,
    "str": _coerce_str,
}


def _scalar_field_types() -> dict[str, str]:
    # Annotations are strings under postponed evaluation.
    return {
        f.name: str(f.type)
        for f in fields(GatewayConfig)
        if str(f.type) in _CASTERS
    }


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def _flatten_scalars(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _normalize_scalars(values: dict[str, Any]) -> dict[str, Any]:
    defaults = asdict(GatewayConfig())
    normalized: dict[str, Any] = {}
    for key, type_name in _scalar_field_types().items():
        value = values.get(key, defaults[key])
        try:
            normalized[key] = _CASTERS[type_name](value)
        except (TypeError, ValueError):
            normalized[key] = defaults[key]
    return normalized


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    env = os.environ
    for key, type_name in _scalar_field_types().items():
        raw = env.get(f"{ENV_PREFIX}{key.upper()}")
        if raw is None:
            continue
        try:
            config[key] = _CASTERS[type_name](raw)
        except (TypeError, ValueError):
            continue
    return config


def _resolve_env_refs(headers: dict[str, Any]) -> dict[str, str]:
    """Expand ``${VAR}`` header values from the environment."""
    resolved: dict[str, str] = {}
    for name, value in headers.items():
        text = _coerce_str(value)
        if text.startswith("${") and text.endswith("}"):
            text = os.environ.get(text[2:-1], "")
        resolved[str(name)] = text
    return resolved


def _parse_provider(raw: dict[str, Any], position: int) -> ProviderConfig:
    provider_id = _coerce_str(raw.get("id")).strip()
    if not provider_id:
        raise ConfigError(f"Provider #{position} is missing an 'id'")
    endpoint = _coerce_str(raw.get("completion_endpoint")).strip()
    if not endpoint:
        raise ConfigError(f"Provider '{provider_id}' has no completion_endpoint")
    protocol = _coerce_str(raw.get("protocol") or "openai").strip().lower()
    if protocol not in _PROTOCOLS:
        raise ConfigError(
            f"Provider '{provider_id}' declares unknown protocol '{protocol}'"
        )
    headers = raw.get("static_headers") or {}
    if not isinstance(headers, dict):
        raise ConfigError(f"Provider '{provider_id}' static_headers must be a table")
    models = raw.get("static_models") or []
    return ProviderConfig(
        id=provider_id,
        completion_endpoint=endpoint,
        discovery_endpoint=(raw.get("discovery_endpoint") or None),
        static_headers=_resolve_env_refs(headers),
        timeout_s=_coerce_float(raw.get("timeout_s", 120.0)),
        prefix=(raw.get("prefix") or None),
        supports_streaming=_coerce_bool(raw.get("supports_streaming", True)),
        priority=_coerce_int(raw.get("priority", 100)),
        static_models=tuple(str(m) for m in models if str(m).strip()),
        protocol=protocol,
        api_key_env=(raw.get("api_key_env") or None),
        reasoning_delimiter=(raw.get("reasoning_delimiter") or None),
    )


def parse_providers(entries: list[Any]) -> list[ProviderConfig]:
    providers: list[ProviderConfig] = []
    seen: set[str] = set()
    for position, raw in enumerate(entries or []):
        if not isinstance(raw, dict):
            raise ConfigError(f"Provider #{position} must be a table")
        provider = _parse_provider(raw, position)
        if provider.id in seen:
            raise ConfigError(f"Duplicate provider id '{provider.id}'")
        seen.add(provider.id)
        providers.append(provider)
    return providers


def parse_overrides(
    table: dict[str, Any], providers: list[ProviderConfig]
) -> dict[str, ResolvedTarget]:
    known = {p.id for p in providers}
    overrides: dict[str, ResolvedTarget] = {}
    for name, target in (table or {}).items():
        if isinstance(target, str):
            provider_id, model = target, name
        elif isinstance(target, dict):
            provider_id = _coerce_str(target.get("provider"))
            model = _coerce_str(target.get("model") or name)
        else:
            raise ConfigError(f"Override for '{name}' must be a string or table")
        if provider_id not in known:
            raise ConfigError(
                f"Override for '{name}' names unknown provider '{provider_id}'"
            )
        overrides[name.strip().lower()] = ResolvedTarget(provider_id, model)
    return overrides


def build_config(data: dict[str, Any], *, apply_env: bool = True) -> GatewayConfig:
    """Build a :class:`GatewayConfig` from an already-parsed TOML mapping."""
    scalars = _normalize_scalars(_flatten_scalars(data))
    if apply_env:
        scalars = _apply_env_overrides(scalars)
    providers = parse_providers(data.get("providers") or [])
    overrides = parse_overrides(data.get("overrides") or {}, providers)
    return GatewayConfig(**scalars, providers=providers, overrides=overrides)


def config_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def load_gateway_config() -> GatewayConfig:
    candidate = config_path()
    cfg = build_config(_read_config_file(candidate))
    cfg.config_file_path = str(candidate)
    return cfg


def list_env_overrides() -> dict[str, str]:
    return {
        key: value
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX) and key != CONFIG_FILE_ENV
    }
