import asyncio
import logging
import shlex
import sys
import threading
from pathlib import Path

import pytest
import yaml

import command_metrics_exporter as cme


class RecordingAccumulator:
    """Accumulator that keeps everything it is handed."""

    def __init__(self):
        self.metrics = []
        self.errors = []
        self._lock = threading.Lock()

    def add_metric(self, metric):
        with self._lock:
            self.metrics.append(metric)

    def add_error(self, error):
        with self._lock:
            self.errors.append(error)


class FakeRunner:
    """Runner returning canned CapturedOutput values keyed by command."""

    def __init__(self, outputs=None, delays=None):
        self.outputs = outputs or {}
        self.delays = delays or {}
        self.calls = []

    async def run(self, command, timeout):
        self.calls.append(command)
        if command in self.delays:
            await asyncio.sleep(self.delays[command])
        output = self.outputs.get(command, cme.CapturedOutput())
        if isinstance(output, Exception):
            raise output
        return output


def python_command(code):
    """Command string running code with the current interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def failed_output(command, outcome, exit_code=None, stdout=b"", stderr=b""):
    message = f"exit status {exit_code}" if exit_code is not None else outcome.value
    return cme.CapturedOutput(
        stdout=stdout,
        stderr=stderr,
        outcome=outcome,
        exit_code=exit_code,
        error=cme.ExecutionError(message, command, outcome, exit_code)
    )


@pytest.fixture
def logger():
    logger = cme.ProgramLogger.VerboseLogger('test_command_metrics_exporter')
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def acc():
    return RecordingAccumulator()


@pytest.fixture
def make_config(tmp_path):
    """Write a YAML config beside a fake script and load it."""

    def _make(collector=None, exporter=None):
        script = tmp_path / 'command_metrics_exporter.py'
        script.touch()
        document = {'collector': collector if collector is not None else {}}
        if exporter is not None:
            document['exporter'] = exporter
        (tmp_path / 'command_metrics_exporter.yml').write_text(yaml.safe_dump(document))

        config = cme.ProgramConfig(cme.ProgramSource(script_path=Path(script)))
        config.initialize()
        return config

    return _make
