"""Live per-provider model registry and its background refresh loop.

Each provider owns an immutable ``lowercase name -> canonical name`` index.
A refresh builds a brand-new index and swaps the registry's top-level mapping
in a single assignment, so a concurrent reader holding a snapshot sees either
the old set or the new one, never a mix. No lock is held across network I/O.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import httpx

from .config import ProviderConfig
from .transform import build_headers

logger = logging.getLogger(__name__)

ModelIndex = Mapping[str, str]

_EMPTY: ModelIndex = MappingProxyType({})


class DiscoveryError(ValueError):
    """Discovery endpoint answered with something that is not a model list."""


@dataclass(frozen=True)
class RefreshOutcome:
    ok: bool
    timestamp: float
    model_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "timestamp": self.timestamp,
            "model_count": self.model_count,
            "error": self.error,
        }


def _index(names: Iterable[str]) -> ModelIndex:
    out: dict[str, str] = {}
    for name in names:
        cleaned = str(name).strip()
        if cleaned:
            out.setdefault(cleaned.lower(), cleaned)
    return MappingProxyType(out)


def parse_model_ids(body: Any) -> list[str]:
    """Extract model identifiers from a discovery response body.

    Accepts the OpenAI ``{"data": [{"id": ...}]}`` listing, the Ollama
    ``{"models": [{"name": ...}]}`` listing, or a bare list of strings/objects.
    """
    items: Any = body
    if isinstance(body, dict):
        if isinstance(body.get("data"), list):
            items = body["data"]
        elif isinstance(body.get("models"), list):
            items = body["models"]
        else:
            raise DiscoveryError("discovery body has no 'data' or 'models' list")
    if not isinstance(items, list):
        raise DiscoveryError(f"unexpected discovery body type {type(body).__name__}")

    names: list[str] = []
    for item in items:
        if isinstance(item, str):
            candidate = item
        elif isinstance(item, dict):
            candidate = item.get("id") or item.get("name") or item.get("model")
        else:
            candidate = None
        if isinstance(candidate, str) and candidate.strip():
            names.append(candidate.strip())
    if not names:
        raise DiscoveryError("discovery body listed no models")
    return names


@dataclass(frozen=True)
class RegistrySnapshot:
    """Point-in-time, read-only view of every provider's model sets."""

    dynamic: Mapping[str, ModelIndex]
    static: Mapping[str, ModelIndex]

    def models_for(self, provider_id: str) -> ModelIndex:
        """Dynamic set when populated, otherwise the static allow-list."""
        current = self.dynamic.get(provider_id) or _EMPTY
        if current:
            return current
        return self.static.get(provider_id) or _EMPTY

    def lookup(self, provider_id: str, name: str) -> str | None:
        return self.models_for(provider_id).get(name.strip().lower())

    def available_models(self) -> dict[str, list[str]]:
        return {
            pid: sorted(self.models_for(pid).values())
            for pid in self.static.keys()
        }

    def listing(self) -> list[tuple[str, str, str]]:
        """All known ``(provider, model, source)`` triples, dynamic union static."""
        rows: list[tuple[str, str, str]] = []
        for pid in self.static.keys():
            dynamic = self.dynamic.get(pid) or _EMPTY
            for key in sorted(dynamic):
                rows.append((pid, dynamic[key], "discovered"))
            static = self.static.get(pid) or _EMPTY
            for key in sorted(static):
                if key not in dynamic:
                    rows.append((pid, static[key], "static"))
        return rows


class ModelRegistry:
    def __init__(
        self, providers: Iterable[ProviderConfig], client: httpx.AsyncClient
    ):
        self._providers = {p.id: p for p in providers}
        self._client = client
        self._static: Mapping[str, ModelIndex] = MappingProxyType(
            {pid: _index(p.static_models) for pid, p in self._providers.items()}
        )
        self._dynamic: Mapping[str, ModelIndex] = MappingProxyType(
            {pid: _EMPTY for pid in self._providers}
        )
        self._outcomes: dict[str, RefreshOutcome] = {}

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    def discoverable_providers(self) -> list[str]:
        return [
            pid for pid, p in self._providers.items() if p.discovery_endpoint
        ]

    def snapshot(self) -> RegistrySnapshot:
        return RegistrySnapshot(dynamic=self._dynamic, static=self._static)

    def last_outcome(self, provider_id: str) -> RefreshOutcome | None:
        return self._outcomes.get(provider_id)

    def replace(self, provider_id: str, names: Iterable[str]) -> None:
        """Swap one provider's dynamic set for a new one in a single assignment."""
        if provider_id not in self._providers:
            raise KeyError(provider_id)
        updated = dict(self._dynamic)
        updated[provider_id] = _index(names)
        self._dynamic = MappingProxyType(updated)

    async def refresh(self, provider_id: str) -> RefreshOutcome | None:
        """Re-query a provider's discovery endpoint.

        Failures are recorded and logged; the previous set is kept and nothing
        is raised to the caller. Providers without a discovery endpoint are
        skipped and ``None`` is returned.
        """
        provider = self._providers[provider_id]
        if not provider.discovery_endpoint:
            return None
        try:
            resp = await self._client.get(
                provider.discovery_endpoint,
                headers=build_headers(provider),
                timeout=httpx.Timeout(provider.timeout_s),
            )
            resp.raise_for_status()
            names = parse_model_ids(resp.json())
        except (httpx.HTTPError, ValueError) as exc:
            outcome = RefreshOutcome(
                ok=False, timestamp=time.time(), error=f"{type(exc).__name__}: {exc}"
            )
            self._outcomes[provider_id] = outcome
            logger.warning(
                "[registry] Refresh failed for provider '%s': %s; keeping %d cached model(s)",
                provider_id,
                outcome.error,
                len(self._dynamic.get(provider_id) or _EMPTY),
            )
            return outcome

        self.replace(provider_id, names)
        outcome = RefreshOutcome(
            ok=True,
            timestamp=time.time(),
            model_count=len(self._dynamic[provider_id]),
        )
        self._outcomes[provider_id] = outcome
        logger.info(
            "[registry] Provider '%s' now serves %d model(s)",
            provider_id,
            outcome.model_count,
        )
        return outcome


class RegistryRefresher:
    """One recurring refresh task per discoverable provider.

    Each task refreshes immediately on start, then every ``interval_s``
    seconds until :meth:`stop` cancels it.
    """

    def __init__(self, registry: ModelRegistry, interval_s: float = 300.0):
        self.registry = registry
        self.interval_s = interval_s
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self) -> None:
        for pid in self.registry.discoverable_providers():
            task = self._tasks.get(pid)
            if task is not None and not task.done():
                continue
            self._tasks[pid] = asyncio.create_task(
                self._run(pid), name=f"registry-refresh-{pid}"
            )
        logger.info(
            "[registry] Refresh loop started for %d provider(s), interval %.0fs",
            len(self._tasks),
            self.interval_s,
        )

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _run(self, provider_id: str) -> None:
        while True:
            try:
                await self.registry.refresh(provider_id)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception(
                    "[registry] Unexpected error refreshing provider '%s'",
                    provider_id,
                )
            await asyncio.sleep(self.interval_s)
