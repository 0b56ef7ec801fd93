"""
Tests for logging setup.
"""

import logging
import shutil
import tempfile
from pathlib import Path

from rich.logging import RichHandler

from token_ledger.utils.logger import LOGGER_NAME, get_logger, setup_logging


class TestLogging:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        logger = logging.getLogger(LOGGER_NAME)
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_console_handler_levels(self):
        logger = setup_logging()
        handler = logger.handlers[0]
        assert isinstance(handler, RichHandler)
        assert handler.level == logging.WARNING

        assert setup_logging(verbose=True).handlers[0].level == logging.DEBUG
        assert len(logging.getLogger(LOGGER_NAME).handlers) == 1

    def test_file_handler_receives_module_logs(self):
        log_file = Path(self.temp_dir) / "logs" / "ledger.log"
        setup_logging(log_file=log_file)

        logging.getLogger("token_ledger.core.tracker").debug("appended %d records", 3)
        for handler in logging.getLogger(LOGGER_NAME).handlers:
            handler.flush()

        assert "appended 3 records" in log_file.read_text(encoding="utf-8")

    def test_get_logger_namespacing(self):
        assert get_logger("cli").name == "token_ledger.cli"
        assert get_logger("token_ledger.core").name == "token_ledger.core"
