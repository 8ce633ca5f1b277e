import asyncio

from huginn_core import __version__
from huginn_core.inspector import PsutilSystemInspector
from huginn_core.telemetry import TelemetryAssembler


def test_psutil_device_info_with_serial_override():
    info = asyncio.run(PsutilSystemInspector(serial_number="SN123").get_device_info())
    assert info["serialNumber"] == "SN123"
    assert info["hostname"]
    assert info["cpuCount"] >= 1
    assert info["totalMemory"] > 0


def test_psutil_metrics_shape():
    metrics = asyncio.run(PsutilSystemInspector().get_system_metrics())
    assert 0 <= metrics["cpuPercent"] <= 100
    assert 0 <= metrics["memory"]["percent"] <= 100
    assert metrics["uptimeSeconds"] >= 0
    assert "bytesSent" in metrics["network"]


def test_collect_has_every_section(inspector):
    payload = asyncio.run(TelemetryAssembler(inspector).collect())
    assert set(payload) == {"hardware", "software", "security", "network", "performance", "timestamp", "agentVersion"}
    assert payload["agentVersion"] == __version__
    assert payload["network"] == {"bytesSent": 1}
    assert payload["software"] == {}


def test_failing_section_is_reported_inline(inspector):
    inspector.fail_metrics = True
    assembler = TelemetryAssembler(inspector)
    payload = asyncio.run(assembler.collect())
    assert payload["performance"]["error"].startswith("RuntimeError")
    assert "error" in payload["network"]
    assert payload["hardware"]["hostname"] == "test-host"
    snap = asyncio.run(assembler.snapshot())
    assert "error" in snap
    assert "cpuPercent" not in snap
