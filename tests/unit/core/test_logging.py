import logging
import pathlib
import tempfile
import unittest

from cfex.core import LoggerConfigurator, getLogger
from cfex.core.logging import CfexFormatter, CfexLogger, LevelFlag, conf, configure_loggers


class TestLoggerConfigurator(unittest.TestCase):
    def setUp(self):
        # Ensure a test logger exists under our CFEX prefix
        self.prefix = "CFEX"
        self.test_logger_name = f"{self.prefix}.testunit"
        self.logger = getLogger(self.test_logger_name)
        self.logger.setLevel(logging.WARNING)
        self.root_logger = logging.getLogger(self.prefix)
        self.root_logger.setLevel(logging.WARNING)

    def test_available_loggers_with_prefix(self):
        names = LoggerConfigurator.available_loggers(self.prefix)
        self.assertIn(self.test_logger_name, names)
        self.assertIn(self.prefix, names)

    def test_available_loggers_without_prefix(self):
        names = LoggerConfigurator.available_loggers()
        self.assertIn("CFEX", names)
        self.assertIn("CFEX.engine", names)

    def test_set_level_changes_level(self):
        LoggerConfigurator.set_level(self.test_logger_name, "DEBUG")
        self.assertEqual(self.logger.level, logging.DEBUG)

    def test_set_level_invalid_raises(self):
        with self.assertRaises(ValueError):
            LoggerConfigurator.set_level(self.test_logger_name, "NOTALEVEL")

    def test_level_flag_follows_set_level(self):
        flag = LevelFlag(self.test_logger_name, logging.DEBUG)
        LoggerConfigurator.set_level(self.test_logger_name, "WARNING")
        self.assertFalse(flag)
        LoggerConfigurator.set_level(self.test_logger_name, "DEBUG")
        self.assertTrue(flag)

    def test_mdc_method_update(self):
        """The method name is carried via the MDC and stamped on records."""
        log = getLogger(self.test_logger_name)
        log.update_method("Demo::Run")
        try:
            self.assertEqual(CfexLogger.mdc()["method"], "Demo::Run")
            record = log.makeRecord(log.name, logging.INFO, __file__, 1, "hello", (), None)
            self.assertEqual(record.method, "Demo::Run")
        finally:
            CfexLogger.reset_method()
        self.assertFalse(CfexLogger.mdc().get("method"))


class TestFormatter(unittest.TestCase):
    def test_method_suffix(self):
        fmt = CfexFormatter("%(levelname)s%(method)s - %(message)s")
        record = logging.LogRecord("CFEX", logging.INFO, __file__, 1, "msg", (), None)
        record.method = "A::B"
        self.assertEqual(fmt.format(record), "INFO - A::B - msg")

    def test_no_method(self):
        fmt = CfexFormatter("%(levelname)s%(method)s - %(message)s")
        record = logging.LogRecord("CFEX", logging.INFO, __file__, 1, "msg", (), None)
        self.assertEqual(fmt.format(record), "INFO - msg")


class TestConfigureLoggers(unittest.TestCase):
    def tearDown(self):
        # undo dictConfig so later tests log through the root handler again
        for name in conf["loggers"]:
            log = logging.getLogger(name)
            for handler in list(log.handlers):
                log.removeHandler(handler)
                handler.close()
            log.propagate = True
        LevelFlag.bump_config_version()

    def test_creates_log_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_dir = pathlib.Path(tmp) / "logs"
            configure_loggers(log_dir)
            getLogger("CFEX.engine").info("written to file")
            for handler in logging.getLogger("CFEX.engine").handlers:
                handler.flush()
            self.assertTrue((log_dir / "cfex.log").is_file())
            self.assertIn("written to file", (log_dir / "cfex.log").read_text())
            self.tearDown()


if __name__ == "__main__":
    unittest.main()
