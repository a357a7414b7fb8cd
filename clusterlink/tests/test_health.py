from __future__ import annotations

import threading
import urllib.error
import urllib.request

from clusterlink.src.health import start_health_server
from clusterlink.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServerWithLeadership:
    """Readiness requires both a running dispatcher and the leader lease."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.leader = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0, leader=self.leader)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_before_bootstrap(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "ready=false" in body

    def test_readyz_returns_503_when_ready_but_not_leader(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "leader=false" in body

    def test_readyz_returns_200_when_ready_and_leader(self) -> None:
        self.ready.set()
        self.leader.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true leader=true"

    def test_readyz_returns_503_after_shutdown_begins(self) -> None:
        self.ready.set()
        self.leader.set()
        assert _get(f"{self.base_url}/readyz")[0] == 200

        self.ready.clear()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "ready=false" in body

    def test_leadz_tracks_leadership(self) -> None:
        assert _get(f"{self.base_url}/leadz") == (503, "not leader")
        self.leader.set()
        assert _get(f"{self.base_url}/leadz") == (200, "ok")

    def test_metrics_exposes_controller_metrics(self) -> None:
        METRICS.bootstrap_clusters.set(2)
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "clusterlink_bootstrap_clusters 2.0" in body
        assert "clusterlink_drift_shutdowns_total" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404


class TestHealthServerWithoutLeaderElection:
    """When leader election is disabled, readiness only depends on the dispatcher."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0, leader=None)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_readyz_returns_200_when_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert "leader=true" in body

    def test_leadz_reports_leader(self) -> None:
        assert _get(f"{self.base_url}/leadz") == (200, "ok")
