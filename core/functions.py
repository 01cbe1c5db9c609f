import random
from decimal import Decimal, ROUND_HALF_UP, getcontext
from typing import Union

from core.enums import SystemConstants

# Устанавливаем точность для Decimal
getcontext().prec = 28


def to_decimal(value: Union[int, float, str, Decimal, None]) -> Decimal:
    """Безопасное преобразование в Decimal"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except Exception:
            return Decimal('0')
    return Decimal('0')


def round_decimal(value: Union[int, float, str, Decimal], precision: int) -> Decimal:
    """Округление до precision знаков по правилу half-up"""
    quant = Decimal(1).scaleb(-precision)
    return to_decimal(value).quantize(quant, rounding=ROUND_HALF_UP)


def quantity_precision(symbol: str) -> int:
    """
    Количество знаков после запятой для объёма по классу инструмента.

    BTC-класс → 3, ETH-класс → 2, BNB-класс → 1, остальные → 3.
    """
    upper = symbol.upper()
    for marker, precision in SystemConstants.QUANTITY_PRECISION:
        if marker in upper:
            return precision
    return SystemConstants.DEFAULT_QUANTITY_PRECISION


def calculate_quantity(position_size: Union[int, float, Decimal], price: Union[int, float, str, Decimal],
                       leverage: int, symbol: str) -> Decimal:
    """
    Расчёт объёма позиции: (размер позиции × плечо) / цена, с точностью инструмента.

    Пример: 400 USDT × 10 / 30000 для BTCUSDT = 0.133
    """
    price_dec = to_decimal(price)
    if price_dec <= 0:
        raise ValueError(f"Некорректная цена для {symbol}: {price}")
    raw_quantity = to_decimal(position_size) * Decimal(leverage) / price_dec
    return round_decimal(raw_quantity, quantity_precision(symbol))


def format_number(value: Union[int, float, Decimal], precision: int = 8) -> str:
    """Форматирование числа с заданной точностью"""
    decimal_value = to_decimal(value)

    # Убираем лишние нули
    formatted = f"{decimal_value:.{precision}f}".rstrip('0').rstrip('.')
    return formatted if formatted else "0"


def format_currency(value: Union[int, float, Decimal], currency: str = "USDT", precision: int = 4) -> str:
    """Форматирование валютного значения со знаком"""
    decimal_value = to_decimal(value)
    sign = "+" if decimal_value > 0 else ""
    return f"{sign}{decimal_value:.{precision}f} {currency}"


def format_percentage(value: Union[int, float, Decimal], precision: int = 2) -> str:
    """Форматирование процентного значения"""
    decimal_value = to_decimal(value)
    return f"{decimal_value:.{precision}f}%"


# =============================================================================
# СЛУЧАЙНЫЕ ПАРАМЕТРЫ ЦИКЛА
# =============================================================================

def sample_position_size(rng: random.Random, min_size: Decimal, max_size: Decimal) -> Decimal:
    """Размер позиции в USDT: равномерно из [min, max], 2 знака"""
    return round_decimal(rng.uniform(float(min_size), float(max_size)), 2)


def sample_hold_minutes(rng: random.Random, min_minutes: Decimal, max_minutes: Decimal) -> int:
    """Время удержания в минутах: целое из [min, max]"""
    return rng.randint(int(min_minutes), int(max_minutes))


def sample_delay_ms(rng: random.Random, min_ms: Decimal, max_ms: Decimal) -> int:
    """Задержка между ногами пары в миллисекундах: целое из [min, max]"""
    return rng.randint(int(min_ms), int(max_ms))
