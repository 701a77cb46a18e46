"""Tests for logging_config module."""

import io
import logging

from oasisbuild.logging_config import SeverityFormatter, configure_logging


def make_record(level, msg="hello"):
    return logging.LogRecord("oasisbuild.test", level, __file__, 1, msg, None, None)


class TestSeverityFormatter:
    def test_prefixes(self):
        formatter = SeverityFormatter()
        assert formatter.format(make_record(logging.INFO)) == "[INFO] hello"
        assert formatter.format(make_record(logging.WARNING)) == "[WARN] hello"
        assert formatter.format(make_record(logging.ERROR)) == "[ERROR] hello"

    def test_color(self):
        line = SeverityFormatter(use_color=True).format(make_record(logging.WARNING))
        assert line.startswith("\033[1;33m[WARN]")
        assert line.endswith("hello")


class TestConfigureLogging:
    def teardown_method(self):
        logger = logging.getLogger("oasisbuild")
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)

    def test_console_output_goes_to_stream(self):
        stream = io.StringIO()
        configure_logging(log_level="INFO", stream=stream)

        logging.getLogger("oasisbuild.pipeline").warning("Low disk space")
        logging.getLogger("oasisbuild.pipeline").debug("hidden")

        assert stream.getvalue() == "[WARN] Low disk space\n"

    def test_idempotent(self):
        stream = io.StringIO()
        configure_logging(stream=stream)
        logger = configure_logging(stream=stream)

        assert len(logger.handlers) == 1

    def test_file_handler_captures_debug(self, tmp_path):
        log_file = tmp_path / "logs" / "oasisbuild.log"
        configure_logging(log_level="INFO", log_file=log_file, stream=io.StringIO())

        logging.getLogger("oasisbuild.build_retry").debug("classifier detail")
        for handler in logging.getLogger("oasisbuild").handlers:
            handler.flush()

        assert "classifier detail" in log_file.read_text()

    def test_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("OASISBUILD_LOG_LEVEL", "ERROR")
        logger = configure_logging(stream=io.StringIO())

        assert logger.level == logging.ERROR
