import pytest

import command_metrics_exporter as cme


@pytest.fixture
def accumulator(logger):
    return cme.PrometheusAccumulator(logger, name_suffix="_mycollector")


def test_numeric_fields_become_gauges(accumulator):
    accumulator.add_metric(cme.Metric(
        "listen", {"pid": 100, "up": True, "name": "nginx"}, {"port": "80"}
    ))

    registry = accumulator.registry
    assert registry.get_sample_value("listen_mycollector_pid", {"port": "80"}) == 100.0
    assert registry.get_sample_value("listen_mycollector_up", {"port": "80"}) == 1.0
    assert registry.get_sample_value("listen_mycollector_name", {"port": "80"}) is None


def test_names_are_sanitized(accumulator):
    accumulator.add_metric(cme.Metric("disk io", {"read-bytes": 5.0}, {"mount.point": "/"}))

    value = accumulator.registry.get_sample_value(
        "disk_io_mycollector_read_bytes", {"mount_point": "/"}
    )
    assert value == 5.0


def test_mismatched_labels_are_dropped(accumulator):
    accumulator.add_metric(cme.Metric("probe", {"ok": 1.0}, {"port": "9090"}))
    accumulator.add_metric(cme.Metric("probe", {"ok": 0.0}))

    registry = accumulator.registry
    assert registry.get_sample_value("probe_mycollector_ok", {"port": "9090"}) == 1.0
    assert registry.get_sample_value("probe_mycollector_ok") is None


def test_errors_are_counted(accumulator):
    accumulator.add_error(cme.ExecutionError(
        "exit status 1", "check", cme.ExecutionOutcome.NON_ZERO_EXIT, 1
    ))
    accumulator.add_error(cme.GlobError("bad pattern"))

    assert accumulator.registry.get_sample_value("exec_collector_errors_total") == 2.0


def test_record_collection(accumulator):
    accumulator.record_collection(
        cme.CollectionResult(commands=3, metrics=5, duration=0.25),
        dynamic_commands=2,
        uptime=12.0,
    )

    registry = accumulator.registry
    assert registry.get_sample_value("exec_collector_commands") == 3.0
    assert registry.get_sample_value("exec_collector_dynamic_commands") == 2.0
    assert registry.get_sample_value("exec_collector_collection_duration_seconds") == 0.25
    assert registry.get_sample_value("exec_collector_uptime_seconds") == 12.0


def test_instances_do_not_share_registries(logger):
    first = cme.PrometheusAccumulator(logger)
    second = cme.PrometheusAccumulator(logger)
    first.add_metric(cme.Metric("cpu", {"usage": 0.5}))
    second.add_metric(cme.Metric("cpu", {"usage": 0.7}))

    assert first.registry.get_sample_value("cpu_usage") == 0.5
    assert second.registry.get_sample_value("cpu_usage") == 0.7


def test_series_not_written_in_a_cycle_are_removed(accumulator):
    accumulator.add_metric(cme.Metric("probe", {"up": 1.0}, {"port": "9090"}))
    accumulator.add_metric(cme.Metric("load", {"avg": 0.3}))
    accumulator.record_collection(cme.CollectionResult(commands=2), 1, 1.0)

    accumulator.add_metric(cme.Metric("probe", {"up": 1.0}, {"port": "9091"}))
    accumulator.record_collection(cme.CollectionResult(commands=1), 1, 2.0)

    registry = accumulator.registry
    assert registry.get_sample_value("probe_mycollector_up", {"port": "9090"}) is None
    assert registry.get_sample_value("probe_mycollector_up", {"port": "9091"}) == 1.0
    assert registry.get_sample_value("load_mycollector_avg") is None


def test_removed_metric_can_return_with_new_labels(accumulator):
    accumulator.add_metric(cme.Metric("probe", {"ok": 1.0}))
    accumulator.record_collection(cme.CollectionResult(commands=1), 0, 1.0)
    accumulator.record_collection(cme.CollectionResult(), 0, 2.0)

    accumulator.add_metric(cme.Metric("probe", {"ok": 0.0}, {"port": "80"}))

    assert accumulator.registry.get_sample_value("probe_mycollector_ok", {"port": "80"}) == 0.0
