# core/settings_config.py

"""
Система конфигураций оркестратора хедж-групп.
Загружает настройки из .env и предоставляет структурированный доступ к ним.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Tuple
from urllib.parse import urlparse

from environs import Env

from core.logger import log_info, log_error

# --- КОНСТАНТЫ ---

DEFAULT_SYMBOLS = ['BTCUSDT', 'ETHUSDT', 'BNBUSDT']
DEFAULT_BASE_URL = "https://fapi.asterdex.com"


# --- ОСНОВНЫЕ ДАТА-КЛАССЫ КОНФИГУРАЦИИ ---

@dataclass(frozen=True)
class Range:
    """Диапазон значений {min, max}"""
    min: Decimal
    max: Decimal

    def to_dict(self) -> Dict[str, float]:
        return {"min": float(self.min), "max": float(self.max)}


@dataclass(frozen=True)
class TradingConfig:
    """Торговые параметры. Только для чтения."""
    leverage: int = 5
    position_size_range: Range = Range(Decimal("400"), Decimal("600"))        # USDT
    close_after_minutes_range: Range = Range(Decimal("30"), Decimal("90"))    # минуты
    delay_range_ms: Range = Range(Decimal("10000"), Decimal("30000"))         # миллисекунды
    supported_symbols: Tuple[str, ...] = tuple(DEFAULT_SYMBOLS)
    group_size: int = 6

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leverage": self.leverage,
            "position_size_range": self.position_size_range.to_dict(),
            "close_after_minutes_range": self.close_after_minutes_range.to_dict(),
            "delay_range_ms": self.delay_range_ms.to_dict(),
            "supported_symbols": list(self.supported_symbols),
            "group_size": self.group_size,
        }


@dataclass(frozen=True)
class ApiConfig:
    """Конфигурация биржевого API"""
    base_url: str = DEFAULT_BASE_URL
    timeout: int = 30


@dataclass
class SystemConfig:
    """Главная, корневая конфигурация системы"""
    trading: TradingConfig = field(default_factory=TradingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    accounts_path: str = "accounts"
    pnl_db_path: str = "logs/pnl_data.db"
    log_dir: str = "logs"
    environment: str = "production"

    def is_production(self) -> bool:
        """Проверка, является ли окружение production."""
        return self.environment.lower() == "production"


# --- КЛАСС ДЛЯ ЗАГРУЗКИ КОНФИГУРАЦИИ ИЗ .ENV ---

class ConfigLoader:
    """Загрузчик конфигураций из файла .env."""

    def __init__(self, env_file: str = ".env"):
        self.env = Env()
        env_path = Path(env_file)
        if env_path.exists():
            self.env.read_env(env_file)
            log_info("system", f"Файл .env загружен: {env_path.absolute()}", 'system_config')
        else:
            log_info("system", f"Файл .env не найден: {env_path.absolute()}. "
                               f"Используются переменные окружения системы.", 'system_config')

    def load_config(self) -> SystemConfig:
        """Загрузка и валидация полной конфигурации системы."""
        try:
            system_config_obj = SystemConfig(
                trading=self._load_trading_config(),
                api=self._load_api_config(),
                accounts_path=self.env.str("ACCOUNTS_PATH", "accounts"),
                pnl_db_path=self.env.str("PNL_DB_PATH", "logs/pnl_data.db"),
                log_dir=self.env.str("LOG_DIR", "logs"),
                environment=self.env.str("ENVIRONMENT", "production"),
            )

            self._validate_config(system_config_obj)

            log_info("system", "Конфигурация системы успешно загружена и валидирована.", 'system_config')
            return system_config_obj

        except Exception as err:
            log_error("system", f"Критическая ошибка загрузки конфигурации: {err}", 'system_config')
            raise

    def _load_range(self, min_name: str, max_name: str, min_default: str, max_default: str) -> Range:
        return Range(
            min=self.env.decimal(min_name, Decimal(min_default)),
            max=self.env.decimal(max_name, Decimal(max_default)),
        )

    def _load_trading_config(self) -> TradingConfig:
        symbols = self.env.list("SUPPORTED_SYMBOLS", DEFAULT_SYMBOLS)
        return TradingConfig(
            leverage=self.env.int("TRADING_LEVERAGE", 5),
            position_size_range=self._load_range("POSITION_SIZE_MIN", "POSITION_SIZE_MAX", "400", "600"),
            close_after_minutes_range=self._load_range(
                "CLOSE_AFTER_MINUTES_MIN", "CLOSE_AFTER_MINUTES_MAX", "30", "90"),
            delay_range_ms=self._load_range("ORDER_DELAY_MIN_MS", "ORDER_DELAY_MAX_MS", "10000", "30000"),
            supported_symbols=tuple(s.strip().upper() for s in symbols if s.strip()),
            group_size=self.env.int("GROUP_SIZE", 6),
        )

    def _load_api_config(self) -> ApiConfig:
        return ApiConfig(
            base_url=self.env.str("ASTER_BASE_URL", DEFAULT_BASE_URL),
            timeout=self.env.int("API_TIMEOUT", 30),
        )

    @staticmethod
    def _validate_config(config: SystemConfig):
        """Валидация торговых и API параметров. Все ошибки собираются в одно сообщение."""
        trading = config.trading
        errors = []

        if not 1 <= trading.leverage <= 100:
            errors.append("TRADING_LEVERAGE должен быть в диапазоне 1..100")

        ranges = {
            "POSITION_SIZE": trading.position_size_range,
            "CLOSE_AFTER_MINUTES": trading.close_after_minutes_range,
            "ORDER_DELAY_MS": trading.delay_range_ms,
        }
        for name, value_range in ranges.items():
            if value_range.min <= 0 or value_range.max <= 0:
                errors.append(f"{name}: значения должны быть положительными")
            elif value_range.min >= value_range.max:
                errors.append(f"{name}: min должен быть меньше max")

        hold = trading.close_after_minutes_range
        if hold.min < 1 or hold.max > 1440:
            errors.append("CLOSE_AFTER_MINUTES должен быть в диапазоне 1..1440 минут")

        if not trading.supported_symbols:
            errors.append("SUPPORTED_SYMBOLS: нужен хотя бы один инструмент")

        if trading.group_size < 2 or trading.group_size % 2:
            errors.append("GROUP_SIZE должен быть чётным и не меньше 2")

        parsed = urlparse(config.api.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(f"ASTER_BASE_URL некорректен: {config.api.base_url}")

        if config.api.timeout < 1:
            errors.append("API_TIMEOUT должен быть не меньше 1 секунды")

        if errors:
            raise ValueError("; ".join(errors))


# --- ГЛОБАЛЬНЫЙ ЭКЗЕМПЛЯР КОНФИГУРАЦИИ ---

def load_system_config(env_file: str = ".env") -> SystemConfig:
    """Фабричная функция для загрузки конфигурации."""
    loader = ConfigLoader(env_file)
    return loader.load_config()


# Загружаем конфигурацию при импорте модуля
try:
    system_config = load_system_config()
except Exception as e:
    log_error("system", f"Не удалось загрузить конфигурацию. Проверьте .env. Ошибка: {e}", 'system_config')
    # В случае ошибки используем значения по умолчанию, чтобы избежать падения при импорте
    system_config = SystemConfig()
