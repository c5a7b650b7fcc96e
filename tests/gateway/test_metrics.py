from chatrouter.metrics import MetricsAggregator, MetricSample


def _sample(provider, duration, stream=False, status=200):
    return MetricSample(
        ts=0.0,
        model="gpt-4o",
        provider=provider,
        duration_ms=duration,
        stream=stream,
        status=status,
    )


def test_empty_summary():
    summary = MetricsAggregator().summary()
    assert summary["rolling"] == {"count": 0}
    assert summary["requests_by_provider"] == {}


def test_counters_and_rolling_window():
    metrics = MetricsAggregator(capacity=3)
    metrics.add(_sample("samura", 100))
    metrics.add(_sample("samura", 300, stream=True))
    metrics.add(_sample("genspark", 200, status=502))
    metrics.add(_sample("genspark", 400))

    summary = metrics.summary()
    assert summary["rolling"]["count"] == 3
    assert summary["rolling"]["avg_duration_ms"] == 300
    assert summary["requests_by_provider"]["samura"] == {
        "total_requests": 2,
        "streaming_requests": 1,
        "failed_requests": 0,
    }
    assert summary["requests_by_provider"]["genspark"]["failed_requests"] == 1
