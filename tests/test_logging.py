"""Test loggers"""

import logging
import tempfile
import unittest
from pathlib import Path

from lmrecipes.utils.logging import (
    ConsoleLogger,
    ExceptionConsoleLogger,
    FileLogger,
    LoglistLogger,
    get_logger,
)


class TestLoglistLogger(unittest.TestCase):

    def setUp(self):
        self.logger = LoglistLogger()
        self.logger.info("information")
        self.logger.warning("a warning")
        self.logger.error("an error")
        self.logger.critical("a disaster")

    def test_get_logs(self):
        logs = self.logger.get_logs()
        self.assertEqual(len(logs), 4)
        self.assertEqual(logs[0], "INFO - information")
        self.assertEqual(logs[1], "WARNING - a warning")

    def test_level_filter(self):
        self.assertEqual(self.logger.count_logs(level=1), 3)
        self.assertEqual(self.logger.count_logs(level=2), 2)
        self.assertNotIn("WARNING - a warning", self.logger.get_logs(2))

    def test_clear(self):
        self.logger.clear_logs()
        self.assertEqual(self.logger.count_logs(), 0)


class TestExceptionLogger(unittest.TestCase):

    def test_error_raises(self):
        logger = ExceptionConsoleLogger("test_error_raises")
        logger.warning("this is fine")
        with self.assertRaises(RuntimeError):
            logger.error("this is not")
        with self.assertRaises(RuntimeError):
            logger.critical("this is not either")


class TestConsoleLogger(unittest.TestCase):

    def test_level(self):
        logger = get_logger("test_console_level")
        self.assertIsInstance(logger, ConsoleLogger)
        logger.set_level(logging.WARNING)
        self.assertEqual(logger.get_level(), logging.WARNING)


class TestFileLogger(unittest.TestCase):

    def test_write(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = Path(tmpdir) / "test.log"
            logger = FileLogger("test_file_logger", log_file)
            logger.info("written to file")
            logger.warning("also written")
            for handler in logger.logger.handlers:
                handler.close()

            content = log_file.read_text(encoding="utf-8")
            self.assertIn("INFO - written to file", content)
            self.assertIn("WARNING - also written", content)


if __name__ == "__main__":
    unittest.main()
