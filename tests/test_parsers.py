from datetime import datetime, timezone

import pytest

import command_metrics_exporter as cme


class TestInfluxParser:

    def test_measurement_tags_fields_and_timestamp(self):
        metrics = cme.InfluxParser().parse(
            b"cpu,host=web01,region=eu usage=0.5,cores=8i,label=\"idle\",ok=t 1700000000000000000\n"
        )

        assert len(metrics) == 1
        metric = metrics[0]
        assert metric.name == "cpu"
        assert metric.tags == {"host": "web01", "region": "eu"}
        assert metric.fields == {"usage": 0.5, "cores": 8, "label": "idle", "ok": True}
        assert metric.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_escaped_characters(self):
        metric = cme.InfluxParser().parse(
            b'disk\\ io,path=/var\\,log value=1,note="a \\"quoted\\" word, really"'
        )[0]

        assert metric.name == "disk io"
        assert metric.tags == {"path": "/var,log"}
        assert metric.fields["note"] == 'a "quoted" word, really'

    def test_blank_and_comment_lines_are_skipped(self):
        metrics = cme.InfluxParser().parse(b"# header\n\nmem used=1\r\nmem used=2\n")
        assert [m.fields["used"] for m in metrics] == [1.0, 2.0]

    @pytest.mark.parametrize("line", [
        b"just_a_measurement",
        b"cpu usage=",
        b"cpu usage=abc",
        b"cpu,host usage=1",
        b"cpu usage=1 not_a_timestamp",
        b'cpu note="unterminated',
    ])
    def test_malformed_lines_raise(self, line):
        with pytest.raises(cme.ParseError):
            cme.InfluxParser().parse(line)

    def test_error_names_the_line(self):
        with pytest.raises(cme.ParseError, match="line 2"):
            cme.InfluxParser().parse(b"ok value=1\nbroken\n")


class TestNagiosParser:

    def test_perfdata_and_service_output(self):
        output = (
            b"PING OK - Packet loss = 0%, RTA = 0.80 ms"
            b" | 'round trip'=0.80ms;100;500;0 pl=0%;20;60;;\n"
        )
        metrics = cme.NagiosParser().parse(output)

        perf = {m.tags["perfdata"]: m for m in metrics if m.name == "nagios"}
        assert perf["round trip"].fields == {
            "value": 0.8, "warning": 100.0, "critical": 500.0, "min": 0.0
        }
        assert perf["round trip"].tags["unit"] == "ms"
        assert perf["pl"].fields == {"value": 0.0, "warning": 20.0, "critical": 60.0}

        state = [m for m in metrics if m.name == "nagios_state"][0]
        assert state.fields == {"service_output": "PING OK - Packet loss = 0%, RTA = 0.80 ms"}

    def test_long_output_and_trailing_perfdata(self):
        output = b"DISK OK\n/ 10% used\n/var 20% used | /=10\n/var=20\n"
        metrics = cme.NagiosParser().parse(output)

        values = {m.tags["perfdata"]: m.fields["value"] for m in metrics if m.name == "nagios"}
        assert values == {"/": 10.0, "/var": 20.0}
        state = [m for m in metrics if m.name == "nagios_state"][0]
        assert state.fields["long_service_output"] == "/ 10% used\n/var 20% used "

    def test_undetermined_values_are_skipped(self):
        metrics = cme.NagiosParser().parse(b"UNKNOWN | load=U;1;2\n")
        assert [m.name for m in metrics] == ["nagios_state"]

    def test_empty_output_has_no_metrics(self):
        assert cme.NagiosParser().parse(b"") == []

    def test_success_state(self):
        metrics, failure = cme.NagiosParser().add_outcome_state(
            None, [cme.Metric("nagios_state", {"service_output": "OK"})]
        )
        assert failure is None
        assert metrics[0].fields["state"] == 0

    def test_exit_code_becomes_state(self):
        error = cme.ExecutionError(
            "exit status 1", "check", cme.ExecutionOutcome.NON_ZERO_EXIT, 1
        )
        metrics, failure = cme.NagiosParser().add_outcome_state(error, [])

        assert failure is None
        assert [(m.name, m.fields) for m in metrics] == [("nagios_state", {"state": 1})]

    def test_unknown_exit_code_reports_failure(self):
        error = cme.ExecutionError(
            "failed to start", "check", cme.ExecutionOutcome.LAUNCH_FAILURE
        )
        perf = cme.Metric("nagios", {"value": 1.0})
        metrics, failure = cme.NagiosParser().add_outcome_state(error, [perf])

        assert isinstance(failure, cme.ParseError)
        assert metrics[-1].fields == {"state": 3}
        assert metrics[-1].timestamp == perf.timestamp


class TestValueParser:

    @pytest.mark.parametrize("data, expected", [
        (b"42\n", 42),
        (b" 3.25 ", 3.25),
        (b"-1e3", -1000.0),
    ])
    def test_single_value(self, data, expected):
        metrics = cme.ValueParser("load").parse(data)
        assert [(m.name, m.fields) for m in metrics] == [("load", {"value": expected})]

    @pytest.mark.parametrize("data", [b"", b"   \n", b"not a number"])
    def test_invalid_value(self, data):
        with pytest.raises(cme.ParseError):
            cme.ValueParser().parse(data)


def test_create_parser():
    assert isinstance(cme.create_parser("influx"), cme.InfluxParser)
    assert isinstance(cme.create_parser("NAGIOS"), cme.NagiosParser)
    assert cme.create_parser("value", "temp").metric_name == "temp"
    with pytest.raises(cme.CollectorConfigurationError):
        cme.create_parser("graphite")
