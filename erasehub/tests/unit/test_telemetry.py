from __future__ import annotations

from erasehub.services import telemetry


def test_request_window_is_empty_without_samples() -> None:
    assert telemetry.availability(300) is None
    assert telemetry.p95_latency(300) is None


def test_availability_counts_only_server_errors_as_failures() -> None:
    for status_code in (200, 404, 422, 503):
        telemetry.record_request(path="/v1/private-cloud/config", status_code=status_code, latency_ms=5.0)

    assert telemetry.availability(300) == 75.0


def test_p95_latency_honors_path_prefix() -> None:
    for latency in range(1, 21):
        telemetry.record_request(path="/v1/private-cloud/test", status_code=200, latency_ms=float(latency))
    telemetry.record_request(path="/v1/health", status_code=200, latency_ms=500.0)

    assert telemetry.p95_latency(300, path_prefix="/v1/private-cloud") == 19.0
    assert telemetry.p95_latency(300) == 20.0
