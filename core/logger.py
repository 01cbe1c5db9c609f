"""
Простая система логирования для оркестратора хедж-групп.
Все события пишутся в единый файл и в консоль в удобном для чтения формате.
"""
import logging
import logging.handlers
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional

LOG_FILE = "hedge_trading.log"
LOG_RETENTION_DAYS = 60


class SimpleLogFormatter(logging.Formatter):
    """
    Простой форматтер для вывода логов в одну строку.
    Формат: [TIMESTAMP] | LEVEL | Group:GROUP_ID | MODULE | MESSAGE
    """

    def format(self, record):
        group_id = getattr(record, 'group_id', 'system')
        module_name = getattr(record, 'module_name', 'Unknown')

        log_format = (
            f"{datetime.fromtimestamp(record.created).isoformat()} | "
            f"{record.levelname:<8} | "
            f"Group:{str(group_id):<10} | "
            f"{module_name:<20} | "
            f"{record.getMessage()}"
        )
        return log_format


class TradingLogger:
    """
    Единая система логирования, которая направляет все сообщения в один файл.
    """

    def __init__(self, log_dir: str = "logs", log_file: str = LOG_FILE):
        self.log_dir = Path(log_dir)
        self.log_file = log_file
        self.logger: Optional[logging.Logger] = None
        self._setup_logger()

    def _setup_logger(self, level: int = logging.INFO):
        """Настройка единого логгера. Повторный вызов переносит файл в текущий log_dir."""
        self.log_dir.mkdir(parents=True, exist_ok=True)

        logger = logging.getLogger("HedgeTrading")
        logger.setLevel(level)
        logger.propagate = False

        # Очищаем существующие обработчики, чтобы избежать дублирования
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / self.log_file,
            maxBytes=20 * 1024 * 1024,  # 20MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(SimpleLogFormatter())
        logger.addHandler(file_handler)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(SimpleLogFormatter())
        logger.addHandler(console_handler)

        self.logger = logger

    def configure(self, log_dir: Optional[str] = None, level: str = "INFO",
                  retention_days: int = LOG_RETENTION_DAYS):
        """Применяет LOG_DIR из конфигурации и уровень из командной строки, затем чистит старые логи."""
        log_level = getattr(logging, level.upper(), logging.INFO)
        if log_dir is not None and Path(log_dir) != self.log_dir:
            self.log_dir = Path(log_dir)
            self._setup_logger(log_level)
        else:
            self.logger.setLevel(log_level)
        self.cleanup_old_logs(retention_days)

    def log(
            self,
            level: str,
            group_id: str,
            message: str,
            module_name: str = "Unknown",
            extra_data: Optional[Dict[str, Any]] = None
    ):
        """Универсальный метод логирования."""

        extra = {
            'group_id': group_id,
            'module_name': module_name
        }

        if extra_data:
            message += f" | data: {extra_data}"

        log_level = getattr(logging, level.upper(), logging.INFO)

        self.logger.log(log_level, message, extra=extra)

    def cleanup_old_logs(self, days: int):
        """Удаляет лог-файлы старше указанного количества дней."""
        try:
            cutoff = time.time() - (days * 86400)
            files_deleted_count = 0

            for file_path in self.log_dir.glob(f"{self.log_file}*"):
                if file_path.is_file() and file_path.stat().st_mtime < cutoff:
                    file_path.unlink()
                    files_deleted_count += 1

            if files_deleted_count > 0:
                self.log("INFO", "system", f"Удалено {files_deleted_count} старых лог-файлов (старше {days} дней).",
                         "LogManager")

        except Exception as e:
            self.log("ERROR", "system", f"Ошибка при очистке старых логов: {e}", "LogManager")


# Глобальный экземпляр логгера
trading_logger = TradingLogger(log_dir=os.getenv("LOG_DIR", "logs"))


# =============================================================================
# ПУБЛИЧНЫЕ ФУНКЦИИ ЛОГИРОВАНИЯ
# =============================================================================

def log_info(group_id: str, message: str, module_name: str = "Unknown", extra_data: Optional[Dict[str, Any]] = None):
    trading_logger.log("INFO", group_id, message, module_name, extra_data)


def log_error(group_id: str, message: str, module_name: str = "Unknown", extra_data: Optional[Dict[str, Any]] = None):
    trading_logger.log("ERROR", group_id, message, module_name, extra_data)


def log_warning(group_id: str, message: str, module_name: str = "Unknown", extra_data: Optional[Dict[str, Any]] = None):
    trading_logger.log("WARNING", group_id, message, module_name, extra_data)


def log_debug(group_id: str, message: str, module_name: str = "Unknown", extra_data: Optional[Dict[str, Any]] = None):
    trading_logger.log("DEBUG", group_id, message, module_name, extra_data)


def log_critical(group_id: str, message: str, module_name: str = "Unknown", extra_data: Optional[Dict[str, Any]] = None):
    trading_logger.log("CRITICAL", group_id, message, module_name, extra_data)
