from pathlib import Path

import pytest
import yaml

import command_metrics_exporter as cme


def test_defaults_apply_to_missing_values(make_config):
    config = make_config({"commands": ["uptime"]})

    assert config.commands == ["uptime"]
    assert config.command == ""
    assert config.pattern == ""
    assert config.listen_ports == []
    assert config.timeout == 5.0
    assert config.data_format == "influx"
    assert config.metrics_port == cme.ProgramConfig.DEFAULT_METRICS_PORT
    assert config.listener_port == cme.ProgramConfig.DEFAULT_LISTENER_PORT
    assert config.poll_interval == cme.ProgramConfig.DEFAULT_POLL_INTERVAL
    assert config.logging["backup_count"] == cme.ProgramConfig.DEFAULT_LOG_BACKUP_COUNT


def test_exporter_section_merges_over_defaults(make_config):
    config = make_config(
        {"commands": []},
        exporter={"metrics_port": 9200, "collection": {"poll_interval_sec": 30}},
    )

    assert config.metrics_port == 9200
    assert config.poll_interval == 30
    assert config.failure_threshold == cme.ProgramConfig.DEFAULT_FAILURE_THRESHOLD


def test_collector_options(make_config):
    config = make_config({
        "commands": "single_command --flag",
        "pattern": "check_port %s",
        "listen_ports": "80, 8082",
        "timeout": "1m30s",
        "name_suffix": "_mycollector",
        "data_format": "Nagios",
    })

    assert config.commands == ["single_command --flag"]
    assert config.listen_ports == ["80", "8082"]
    assert config.timeout == 90.0
    assert config.name_suffix == "_mycollector"
    assert config.data_format == "nagios"


def test_numeric_listen_port(make_config):
    assert make_config({"pattern": "p %s", "listen_ports": 8080}).listen_ports == ["8080"]


@pytest.mark.parametrize("collector", [
    {"pattern": "no placeholder"},
    {"timeout": "5 parsecs"},
    {"timeout": 0},
    {"data_format": "graphite"},
    {"commands": [1, 2]},
])
def test_invalid_collector_section(make_config, collector):
    with pytest.raises(cme.CollectorConfigurationError):
        make_config(collector)


@pytest.mark.parametrize("exporter", [
    {"metrics_port": 70000},
    {"listener_port": "http"},
    {"metrics_port": 9300, "listener_port": 9300},
    {"collection": {"poll_interval_sec": "often"}},
    {"collection": {"poll_interval_sec": 0}},
    {"collection": {"failure_threshold": "20"}},
    {"collection": {"failure_threshold": 0}},
    {"collection": ["poll_interval_sec"]},
])
def test_invalid_exporter_section(make_config, exporter):
    with pytest.raises(cme.CollectorConfigurationError):
        make_config({"commands": ["uptime"]}, exporter=exporter)


def test_missing_collector_section(tmp_path):
    script = tmp_path / "exporter.py"
    (tmp_path / "exporter.yml").write_text(yaml.safe_dump({"exporter": {}}))

    config = cme.ProgramConfig(cme.ProgramSource(script_path=script))
    with pytest.raises(cme.CollectorConfigurationError, match="collector"):
        config.initialize()


def test_missing_config_file(tmp_path):
    source = cme.ProgramSource(script_path=tmp_path / "exporter.py")
    with pytest.raises(FileNotFoundError):
        source.config_path


def test_source_paths(tmp_path):
    source = cme.ProgramSource(script_path=tmp_path / "exporter.py")
    assert source.base_name == "exporter"
    assert source.log_path == tmp_path / "exporter.log"


@pytest.mark.parametrize("value, seconds", [
    ("5s", 5.0),
    ("500ms", 0.5),
    ("2m", 120.0),
    ("1h", 3600.0),
    ("1m30s", 90.0),
    ("2.5", 2.5),
    (10, 10.0),
])
def test_parse_duration(value, seconds):
    assert cme.parse_duration(value) == pytest.approx(seconds)


@pytest.mark.parametrize("value", ["", "s", "5x", "-5s", True, 0])
def test_parse_duration_rejects(value):
    with pytest.raises(cme.CollectorConfigurationError):
        cme.parse_duration(value)


def test_program_logger_writes_log_file(make_config, tmp_path):
    config = make_config({"commands": ["uptime"]})
    program_logger = cme.ProgramLogger(config._source, config)
    try:
        logger = program_logger.logger
        assert config.logger is logger
        assert set(program_logger.handlers) == {"console", "file"}

        logger.info("collector started")
        logger.verbose("verbose detail")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.verbose("failure details", exc_info=True)
        for handler in logger.handlers:
            handler.flush()

        content = (tmp_path / "command_metrics_exporter.log").read_text()
        assert "collector started" in content
        assert "[VERBOSE] verbose detail" in content
        assert "ValueError: boom" in content
    finally:
        program_logger.close()
