import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from chatrouter.config import GatewayConfig, ProviderConfig, ResolvedTarget  # noqa: E402

SAMURA = ProviderConfig(
    id="samura",
    completion_endpoint="https://samura.test/v1/chat/completions",
    discovery_endpoint="https://samura.test/v1/models",
    prefix="samu/",
    priority=10,
    timeout_s=5,
    reasoning_delimiter="</think>",
)
GENSPARK = ProviderConfig(
    id="genspark",
    completion_endpoint="https://genspark.test/v1/chat/completions",
    prefix="gs/",
    priority=20,
    timeout_s=5,
    static_models=("gpt-4o", "claude-3-7-sonnet", "deep-seek-r1"),
)
OPENROUTER = ProviderConfig(
    id="openrouter",
    completion_endpoint="https://openrouter.test/api/v1/chat/completions",
    discovery_endpoint="https://openrouter.test/api/v1/models",
    prefix="or/",
    priority=30,
    timeout_s=5,
    protocol="openrouter",
    supports_streaming=False,
)


@pytest.fixture
def providers():
    return [SAMURA, GENSPARK, OPENROUTER]


@pytest.fixture
def gateway_config(tmp_path, providers):
    return GatewayConfig(
        log_path=str(tmp_path / "logs" / "requests.jsonl"),
        enable_metrics=True,
        refresh_interval_s=0.05,
        providers=providers,
        overrides={"pinned-model": ResolvedTarget("genspark", "claude-3-7-sonnet")},
    )


class FakeUpstream:
    """Programmable stand-in for every provider, served via httpx.MockTransport."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, url, handler):
        self.routes[(method, url)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, str(request.url)))
        if handler is None:
            return httpx.Response(404, json={"error": "no route"})
        return handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def upstream():
    return FakeUpstream()
