"""Map a client-facing model identifier to a provider and upstream model.

Precedence, evaluated by :func:`resolve_model`:

1. the override table (pinned names, case-insensitive);
2. provider prefixes in declared order; a matching prefix is final, so a
   prefixed name missing from that provider's set does not fall through;
3. unprefixed membership across providers in priority order (lowest
   ``priority`` value first, declaration order on ties). A name served by
   several providers goes to the first of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

from .config import ProviderConfig, ResolvedTarget
from .registry import ModelRegistry, RegistrySnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrefixRule:
    prefix: str
    provider_id: str


def prefix_table(providers: Sequence[ProviderConfig]) -> list[PrefixRule]:
    return [
        PrefixRule(p.prefix.lower(), p.id) for p in providers if p.prefix
    ]


def priority_order(providers: Sequence[ProviderConfig]) -> list[str]:
    ranked = sorted(enumerate(providers), key=lambda item: (item[1].priority, item[0]))
    return [p.id for _, p in ranked]


def resolve_model(
    identifier: str,
    snapshot: RegistrySnapshot,
    *,
    prefixes: Sequence[PrefixRule],
    priority: Sequence[str],
    overrides: Mapping[str, ResolvedTarget],
) -> ResolvedTarget | None:
    key = identifier.strip().lower()
    if not key:
        return None

    pinned = overrides.get(key)
    if pinned is not None:
        return pinned

    for rule in prefixes:
        if not key.startswith(rule.prefix):
            continue
        canonical = snapshot.lookup(rule.provider_id, key[len(rule.prefix) :])
        if canonical is None:
            return None
        return ResolvedTarget(rule.provider_id, canonical)

    claimants = [
        pid for pid in priority if snapshot.lookup(pid, key) is not None
    ]
    if not claimants:
        return None
    if len(claimants) > 1:
        logger.debug(
            "[resolver] '%s' is served by %s; routing to '%s' by priority",
            identifier,
            ", ".join(claimants),
            claimants[0],
        )
    return ResolvedTarget(claimants[0], snapshot.lookup(claimants[0], key))


class Resolver:
    """Binds the routing tables to a live registry."""

    def __init__(
        self,
        providers: Sequence[ProviderConfig],
        registry: ModelRegistry,
        overrides: Mapping[str, ResolvedTarget] | None = None,
    ):
        self.registry = registry
        self.prefixes = prefix_table(providers)
        self.priority = priority_order(providers)
        self.overrides = {k.lower(): v for k, v in (overrides or {}).items()}

    def resolve(
        self, identifier: str, snapshot: RegistrySnapshot | None = None
    ) -> ResolvedTarget | None:
        return resolve_model(
            identifier,
            snapshot if snapshot is not None else self.registry.snapshot(),
            prefixes=self.prefixes,
            priority=self.priority,
            overrides=self.overrides,
        )
