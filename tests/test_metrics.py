from filevault.v1.infra.jobs.metrics import (
    InMemoryMetricsSink,
    LogMetricsSink,
    create_metrics_sink,
)


def test_counters_match_on_tag_subsets():
    sink = InMemoryMetricsSink()
    sink.increment("jobs.completed", result="success", type="ocr")
    sink.increment("jobs.completed", result="failure", type="ocr")
    sink.increment("jobs.completed", value=3, result="success", type="embed")

    assert sink.count("jobs.completed") == 5
    assert sink.count("jobs.completed", result="success") == 4
    assert sink.count("jobs.completed", result="success", type="ocr") == 1
    assert sink.count("jobs.completed", type="summarize") == 0
    assert sink.count("never.emitted") == 0


def test_snapshot_and_timings():
    sink = InMemoryMetricsSink()
    sink.increment("jobs.claimed", value=2)
    sink.increment("jobs.dlq", type="ocr")
    sink.timing("jobs.duration", 0.25, type="ocr")

    assert sink.snapshot() == {"jobs.claimed": 2, "jobs.dlq": 1}
    assert sink.timings["jobs.duration"] == [((("type", "ocr"),), 0.25)]


def test_sink_follows_settings(test_settings):
    assert isinstance(create_metrics_sink(test_settings), InMemoryMetricsSink)

    log_settings = test_settings.model_copy(update={"metrics_backend": "log"})
    assert isinstance(create_metrics_sink(log_settings), LogMetricsSink)
