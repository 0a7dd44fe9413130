import io
import json

import pytest

import command_metrics_exporter as cme
from conftest import FakeRunner


class Response:

    def __init__(self):
        self.status = None
        self.headers = None

    def __call__(self, status, headers):
        self.status = status
        self.headers = headers


@pytest.fixture
def listener(make_config, logger):
    config = make_config({
        "commands": ["uptime"],
        "pattern": "probe %s",
        "listen_ports": "80",
    })
    collector = cme.CommandCollector.from_config(config, logger, FakeRunner())
    updater = cme.DynamicCommandUpdater(config.pattern, collector.registry, logger)
    stats = cme.CollectionStats()
    return cme.MetricsListener(config, collector, updater, stats, logger)


def call(listener, path, method="GET", body=b""):
    environ = {
        "PATH_INFO": path,
        "REQUEST_METHOD": method,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
    }
    response = Response()
    chunks = listener.create_wsgi_app()(environ, response)
    return response, b"".join(chunks)


def test_write_replaces_dynamic_commands(listener):
    response, _ = call(
        listener, "/write", "POST",
        b"ports,source=discovery http=9090,admin=9091\n",
    )

    assert response.status == "204 No Content"
    assert list(listener.collector.registry.read().commands) == ["probe 9090", "probe 9091"]


def test_write_without_float_fields_keeps_commands(listener):
    call(listener, "/write", "POST", b"ports http=9090\n")
    response, _ = call(listener, "/write", "POST", b"ports http=9091i,name=\"web\"\n")

    assert response.status == "204 No Content"
    assert list(listener.collector.registry.read().commands) == ["probe 9090"]


def test_malformed_write_is_rejected(listener):
    response, body = call(listener, "/write", "POST", b"not line protocol at all\n")

    assert response.status == "400 Bad Request"
    assert json.loads(body)["status"] == "error"
    assert listener.collector.registry.read().commands == ()


def test_health_reports_commands(listener):
    call(listener, "/write", "POST", b"ports http=9090\n")

    response, body = call(listener, "/health")
    report = json.loads(body)

    assert response.status == "200 OK"
    assert report["service"]["status"] == "healthy"
    assert report["commands"]["static"] == ["probe 80"]
    assert report["commands"]["dynamic"] == ["probe 9090"]
    assert report["commands"]["dynamic_generation"] == 1
    assert report["stats"]["configuration"]["timeout_seconds"] == 5.0


def test_health_unhealthy_after_failed_cycles(listener):
    for _ in range(listener.config.failure_threshold):
        listener.stats.record(cme.CollectionResult(commands=1, errors=1, failed_commands=1))

    response, body = call(listener, "/health")

    assert response.status == "503 Service Unavailable"
    assert json.loads(body)["service"]["status"] == "unhealthy"


@pytest.mark.parametrize("path, method", [("/metrics", "GET"), ("/write", "GET")])
def test_unknown_routes(listener, path, method):
    response, _ = call(listener, path, method)
    assert response.status == "404 Not Found"
