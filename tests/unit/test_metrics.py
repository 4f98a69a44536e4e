"""Unit tests for Prometheus metrics."""

from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from vault.metrics import VaultMetrics


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return VaultMetrics(registry=registry)


class TestVaultMetrics:
    """Tests for VaultMetrics class."""

    def test_segment_uploaded(self, metrics, registry):
        metrics.record_segment_uploaded("dbdump", 1000)
        metrics.record_segment_uploaded("dbdump", 500)

        assert registry.get_sample_value("vault_segments_uploaded_total", {"stream": "dbdump"}) == 2
        assert registry.get_sample_value("vault_bytes_uploaded_total", {"stream": "dbdump"}) == 1500

    def test_segment_downloaded(self, metrics, registry):
        metrics.record_segment_downloaded("dataroot")
        assert registry.get_sample_value("vault_segments_downloaded_total", {"stream": "dataroot"}) == 1

    def test_rows_restored(self, metrics, registry):
        metrics.record_rows_restored("config", 25)
        assert registry.get_sample_value("vault_rows_restored_total", {"table": "config"}) == 25

    def test_record_error(self, metrics, registry):
        metrics.record_error("transport")
        assert registry.get_sample_value("vault_errors_total", {"type": "transport"}) == 1

    def test_operation_status(self, metrics, registry):
        """Test only finished operations update the last success time."""
        metrics.record_operation_status("backup", "failed")
        assert registry.get_sample_value("vault_last_success_timestamp", {"type": "backup"}) is None

        metrics.record_operation_status("backup", "finished")
        assert registry.get_sample_value("vault_operations_total", {"type": "backup", "status": "finished"}) == 1
        assert registry.get_sample_value("vault_last_success_timestamp", {"type": "backup"}) > 0

    def test_stage_timer(self, metrics, registry):
        metrics.start_stage_timer("dbdump")
        duration = metrics.stop_stage_timer("backup", "dbdump")

        assert duration is not None and duration >= 0
        assert registry.get_sample_value("vault_duration_seconds_count", {"type": "backup", "stage": "dbdump"}) == 1

    def test_stop_timer_not_started(self, metrics):
        assert metrics.stop_stage_timer("backup", "never") is None

    def test_get_metrics(self, metrics):
        metrics.record_error("database")
        assert b"vault_errors_total" in metrics.get_metrics()


def test_start_metrics_server(metrics, registry) -> None:
    """Test the HTTP server is started on the requested port."""
    with patch("vault.metrics.start_http_server") as mock_start:
        metrics.start_metrics_server(port=9999)
    mock_start.assert_called_once_with(9999, registry=registry)


def test_start_metrics_server_failure(metrics) -> None:
    """Test server start errors are propagated."""
    with patch("vault.metrics.start_http_server", side_effect=OSError("in use")):
        with pytest.raises(OSError):
            metrics.start_metrics_server()
