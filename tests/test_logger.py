"""Tests for the single-file trading log."""

import logging
import os
import time

import pytest

from core.logger import LOG_FILE, SimpleLogFormatter, TradingLogger, trading_logger


@pytest.fixture
def logger_factory(tmp_path):
    def _create(subdir="first"):
        return TradingLogger(log_dir=str(tmp_path / subdir))

    yield _create
    # Логгер "HedgeTrading" общий: возвращаем обработчики глобального экземпляра
    trading_logger._setup_logger()


class TestFormatter:
    def test_single_line_with_group_and_module(self):
        record = logging.LogRecord("HedgeTrading", logging.WARNING, __file__, 1, "Карантин", None, None)
        record.group_id = "group_3"
        record.module_name = "GroupRunner"

        line = SimpleLogFormatter().format(record)

        parts = [part.strip() for part in line.split(" | ")]
        assert parts[1:] == ["WARNING", "Group:group_3", "GroupRunner", "Карантин"]


class TestTradingLogger:
    def test_writes_extra_data_to_file(self, logger_factory, tmp_path):
        instance = logger_factory()

        instance.log("INFO", "group_1", "Цикл завершён", "GroupRunner", {"cycle": 2})
        for handler in instance.logger.handlers:
            handler.flush()

        content = (tmp_path / "first" / LOG_FILE).read_text(encoding="utf-8")
        assert "Group:group_1" in content
        assert "Цикл завершён | data: {'cycle': 2}" in content

    def test_configure_moves_log_dir_and_sets_level(self, logger_factory, tmp_path):
        instance = logger_factory()

        instance.configure(str(tmp_path / "configured"), level="debug")
        instance.log("DEBUG", "system", "debug line", "test")
        for handler in instance.logger.handlers:
            handler.flush()

        assert instance.logger.level == logging.DEBUG
        assert "debug line" in (tmp_path / "configured" / LOG_FILE).read_text(encoding="utf-8")

    def test_configure_removes_logs_past_retention(self, logger_factory, tmp_path):
        instance = logger_factory()
        stale = tmp_path / "first" / f"{LOG_FILE}.3"
        fresh = tmp_path / "first" / f"{LOG_FILE}.1"
        stale.write_text("old")
        fresh.write_text("new")
        old_time = time.time() - 61 * 86400
        os.utime(stale, (old_time, old_time))

        instance.configure(retention_days=60)

        assert not stale.exists()
        assert fresh.exists()
