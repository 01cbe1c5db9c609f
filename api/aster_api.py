import asyncio
import hashlib
import hmac
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from core.functions import format_number, to_decimal
from core.logger import log_debug, log_error, log_info

# Эндпоинты, требующие подписи (timestamp + recvWindow + signature)
SIGNED_ENDPOINTS = (
    "/fapi/v1/order",
    "/fapi/v1/account",
    "/fapi/v1/positionRisk",
    "/fapi/v1/balance",
    "/fapi/v1/openOrders",
    "/fapi/v1/leverage",
    "/fapi/v2/account",
    "/fapi/v2/positionRisk",
    "/fapi/v2/balance",
)
RECV_WINDOW = 5000


class AsterAPIError(Exception):
    """Ошибка биржевого API (не-2xx ответ или сетевая ошибка)"""

    def __init__(self, message: str, code: Optional[int] = None, status: Optional[int] = None):
        self.message = message
        self.code = code
        self.status = status
        super().__init__(f"API error: {message} (code: {code})")


class AsterAPI:
    """
    API клиент для фьючерсов Aster (REST в стиле Binance /fapi).

    Особенности:
    - HMAC-SHA256 подпись приватных запросов
    - Decimal для цен и объёмов
    - Одна aiohttp сессия на клиента
    - Ошибки не глотаются: любой не-2xx ответ превращается в AsterAPIError
    """

    def __init__(self, api_key: str, secret_key: str, base_url: str = "https://fapi.asterdex.com",
                 account_name: str = "", timeout: int = 30, proxy_url: str = ""):
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.account_name = account_name or "system"
        self.timeout = timeout
        self.proxy_url = proxy_url or None

        # Rate limiting
        self.rate_limit_delay = 0.1  # 100ms между запросами
        self.last_request_time = 0.0

        self.session: Optional[aiohttp.ClientSession] = None

        if self.api_key:
            log_debug(self.account_name,
                      f"AsterAPI инициализирован с ключом: {self.api_key[:4]}...{self.api_key[-4:]}",
                      module_name="aster_api")

    async def _ensure_session(self):
        """Создает сессию при первом вызове и переиспользует ее."""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": "HedgeGroupTrader/1.0"}
            )

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Закрытие HTTP сессии"""
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    def _generate_signature(self, query_string: str) -> str:
        return hmac.new(
            self.secret_key.encode("utf-8"),
            query_string.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

    @staticmethod
    def _build_query_string(params: Dict[str, Any]) -> str:
        clean = {}
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, Decimal):
                value = format_number(value)
            elif isinstance(value, bool):
                value = "true" if value else "false"
            clean[key] = str(value)
        return urlencode(clean)

    async def _rate_limit(self):
        """Управление rate limits"""
        time_since_last = time.time() - self.last_request_time
        if time_since_last < self.rate_limit_delay:
            await asyncio.sleep(self.rate_limit_delay - time_since_last)
        self.last_request_time = time.time()

    async def _make_request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Выполнение HTTP запроса. Ошибки пробрасываются вызывающему как AsterAPIError."""
        params = dict(params or {})
        await self._ensure_session()
        await self._rate_limit()

        signed = endpoint in SIGNED_ENDPOINTS
        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = RECV_WINDOW

        query_string = self._build_query_string(params)
        if signed:
            query_string = f"{query_string}&signature={self._generate_signature(query_string)}"

        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{endpoint}"
        if method == "GET":
            url = f"{url}?{query_string}" if query_string else url
            body = None
        else:
            body = query_string

        try:
            async with self.session.request(method, url, headers=headers, data=body,
                                            proxy=self.proxy_url) as response:
                try:
                    result = await response.json(content_type=None)
                except ValueError:
                    body_text = (await response.text())[:200]
                    log_error(self.account_name, f"Не-JSON ответ {endpoint} (HTTP {response.status}): {body_text}",
                              module_name="aster_api")
                    raise AsterAPIError(f"invalid JSON response: {body_text}", status=response.status)
                if response.status >= 400:
                    message = "unknown error"
                    code = None
                    if isinstance(result, dict):
                        message = result.get("msg") or result.get("message") or message
                        code = result.get("code")
                    log_error(self.account_name, f"API ошибка {endpoint}: {message} (код: {code})",
                              module_name="aster_api")
                    raise AsterAPIError(message, code=code, status=response.status)
                return result
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log_error(self.account_name, f"Ошибка запроса {method} {endpoint}: {e!r}", module_name="aster_api")
            raise AsterAPIError(str(e) or type(e).__name__) from e

    # =============================================================================
    # ТОРГОВЫЕ МЕТОДЫ
    # =============================================================================

    async def place_order(self, symbol: str, side: str, order_type: str, position_side: str = "BOTH",
                          quantity: Optional[Decimal] = None, reduce_only: bool = False,
                          **extra: Any) -> Dict[str, Any]:
        """Размещение ордера. side/order_type принимают строки или значения Enum."""
        params = {
            "symbol": symbol,
            "side": getattr(side, "value", side),
            "type": getattr(order_type, "value", order_type),
            "positionSide": getattr(position_side, "value", position_side),
            "quantity": quantity,
        }
        if reduce_only:
            params["reduceOnly"] = True
        params.update(extra)

        result = await self._make_request("POST", "/fapi/v1/order", params)
        log_info(self.account_name,
                 f"Ордер {params['side']} {params['type']} {symbol} qty={format_number(to_decimal(quantity))} "
                 f"размещен: orderId={result.get('orderId')}",
                 module_name="aster_api")
        return result

    async def get_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self._make_request("GET", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id})

    async def cancel_order(self, symbol: str, order_id: int) -> Dict[str, Any]:
        return await self._make_request("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id})

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        return await self._make_request("POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage})

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._make_request("GET", "/fapi/v1/openOrders", {"symbol": symbol})

    # =============================================================================
    # АККАУНТ
    # =============================================================================

    async def get_account_info(self) -> Dict[str, Any]:
        return await self._make_request("GET", "/fapi/v2/account")

    async def get_positions(self) -> List[Dict[str, Any]]:
        """Все позиции аккаунта (positionRisk)"""
        return await self._make_request("GET", "/fapi/v2/positionRisk")

    async def get_balance(self) -> List[Dict[str, Any]]:
        return await self._make_request("GET", "/fapi/v2/balance")

    # =============================================================================
    # РЫНОЧНЫЕ ДАННЫЕ
    # =============================================================================

    async def get_symbol_price(self, symbol: str) -> Dict[str, Any]:
        """Последняя цена инструмента: {"symbol": ..., "price": ...}"""
        return await self._make_request("GET", "/fapi/v1/ticker/price", {"symbol": symbol})
