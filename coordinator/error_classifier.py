# coordinator/error_classifier.py
"""
Классификация ошибок биржи.
"""
from core.enums import ErrorKind

MARGIN_ERROR_CODE = -2019
MARGIN_ERROR_MARKERS = (
    "code: -2019",
    "margin is insufficient",
    "insufficient margin",
)


def is_insufficient_margin(exc: BaseException) -> bool:
    if getattr(exc, "code", None) == MARGIN_ERROR_CODE:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in MARGIN_ERROR_MARKERS)


def classify_error(exc: BaseException) -> ErrorKind:
    """Нехватка маржи по коду -2019 или тексту сообщения, всё остальное - OTHER"""
    if is_insufficient_margin(exc):
        return ErrorKind.INSUFFICIENT_MARGIN
    return ErrorKind.OTHER
