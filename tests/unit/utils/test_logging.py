"""Tests for logging setup at positiondesk/utils/logging.py."""
import structlog
from structlog.testing import capture_logs

from positiondesk.utils.logging import configure_logging, get_logger


class TestGetLogger:
    def test_binds_component_and_correlation_id(self):
        with capture_logs() as logs:
            get_logger("open_orders", correlation_id="ord-1").info("Rows bound", rows=3)

        assert logs == [
            {
                "component": "open_orders",
                "correlation_id": "ord-1",
                "rows": 3,
                "event": "Rows bound",
                "log_level": "info",
            }
        ]

    def test_correlation_id_optional(self):
        with capture_logs() as logs:
            get_logger("sampler").warning("Sampler poll failed")
        assert "correlation_id" not in logs[0]


class TestConfigureLogging:
    def test_level_filters_debug(self, capsys):
        try:
            configure_logging(json_output=True, level="INFO")
            logger = structlog.get_logger()
            logger.debug("hidden")
            logger.info("shown", token_count=2)
        finally:
            structlog.reset_defaults()

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert '"token_count": 2' in out
