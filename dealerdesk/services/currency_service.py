"""
Currency Conversion Service

Exchange rates are expressed as units of a currency per one unit of the base
currency (USD by default), as returned by the Open Exchange Rates API.
Rates are cached in-process for a short TTL. Conversions are advisory: a
provider outage degrades to a stale cached rate, then to a neutral 1.0,
and never raises to the caller.
"""
import copy
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

import requests

from dealerdesk.core.config import settings
from dealerdesk.services.pricing import round_money, to_decimal, FIXED

logger = logging.getLogger(__name__)

NEUTRAL_RATE = Decimal("1")


@dataclass(frozen=True)
class ConversionResult:
    original_amount: Decimal
    converted_amount: Decimal
    from_currency: str
    to_currency: str
    rate: Decimal


class CurrencyService:
    def __init__(
        self,
        app_id: Optional[str] = None,
        url: Optional[str] = None,
        base_currency: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.app_id = app_id if app_id is not None else settings.OPEN_EXCHANGE_RATES_APP_ID
        self.url = url or settings.EXCHANGE_RATE_URL
        self.base_currency = (base_currency or settings.BASE_CURRENCY).upper()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.EXCHANGE_RATE_CACHE_TTL_SECONDS
        self.timeout = timeout if timeout is not None else settings.EXCHANGE_RATE_TIMEOUT_SECONDS
        self._clock = clock

        # code -> (rate, fetched_at)
        self._cache: Dict[str, Tuple[Decimal, float]] = {}
        self._lock = threading.Lock()
        self._refresh_locks: Dict[str, threading.Lock] = {}
        self._hits = 0
        self._misses = 0

    # ---------- cache ----------

    def _fresh_rate(self, code: str) -> Optional[Decimal]:
        with self._lock:
            entry = self._cache.get(code)
            if entry and self._clock() - entry[1] < self.ttl_seconds:
                self._hits += 1
                return entry[0]
        return None

    def _refresh_lock(self, code: str) -> threading.Lock:
        with self._lock:
            lock = self._refresh_locks.get(code)
            if lock is None:
                lock = self._refresh_locks[code] = threading.Lock()
            return lock

    def prime(self, code: str, rate) -> None:
        """Store a rate as if it had just been fetched."""
        with self._lock:
            self._cache[code.upper()] = (to_decimal(rate), self._clock())

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def cache_stats(self) -> dict:
        now = self._clock()
        with self._lock:
            return {
                "entries": {
                    code: {
                        "rate": str(rate),
                        "age_seconds": round(now - fetched_at, 1),
                        "fresh": now - fetched_at < self.ttl_seconds,
                    }
                    for code, (rate, fetched_at) in self._cache.items()
                },
                "hits": self._hits,
                "misses": self._misses,
                "ttl_seconds": self.ttl_seconds,
            }

    # ---------- provider ----------

    def _fetch_rate(self, code: str) -> Decimal:
        if not self.app_id:
            raise ValueError("Exchange rate provider app id is not configured")

        response = requests.get(
            self.url,
            params={"app_id": self.app_id, "base": self.base_currency, "symbols": code},
            timeout=self.timeout,
        )
        response.raise_for_status()
        rates = response.json().get("rates") or {}
        if code not in rates:
            raise ValueError(f"Provider returned no rate for {code}")

        rate = to_decimal(rates[code])
        if rate <= 0:
            raise ValueError(f"Provider returned invalid rate {rate} for {code}")
        return rate

    def get_rate(self, code: str) -> Decimal:
        """Units of ``code`` per one unit of the base currency."""
        code = code.upper()
        if code == self.base_currency:
            return NEUTRAL_RATE

        rate = self._fresh_rate(code)
        if rate is not None:
            return rate

        # One refresh per code at a time; waiters reuse the fetched value.
        with self._refresh_lock(code):
            rate = self._fresh_rate(code)
            if rate is not None:
                return rate

            with self._lock:
                self._misses += 1
            try:
                rate = self._fetch_rate(code)
            except (requests.RequestException, ValueError) as e:
                with self._lock:
                    stale = self._cache.get(code)
                if stale:
                    logger.warning("Exchange rate fetch failed for %s, using stale cached rate: %s", code, e)
                    return stale[0]
                logger.warning("Exchange rate fetch failed for %s, using neutral rate 1.0: %s", code, e)
                return NEUTRAL_RATE

            with self._lock:
                self._cache[code] = (rate, self._clock())
            logger.info("Fetched exchange rate %s=%s (base %s)", code, rate, self.base_currency)
            return rate

    # ---------- conversion ----------

    def cross_rate(self, from_code: str, to_code: str) -> Decimal:
        if from_code.upper() == to_code.upper():
            return NEUTRAL_RATE
        return self.get_rate(to_code) / self.get_rate(from_code)

    def convert(self, amount, from_code: str, to_code: str) -> ConversionResult:
        amount = to_decimal(amount)
        from_code, to_code = from_code.upper(), to_code.upper()

        if from_code == to_code or amount <= 0:
            return ConversionResult(amount, amount, from_code, to_code, NEUTRAL_RATE)

        rate = self.cross_rate(from_code, to_code)
        return ConversionResult(
            original_amount=amount,
            converted_amount=round_money(amount * rate),
            from_currency=from_code,
            to_currency=to_code,
            rate=rate,
        )

    def convert_prices(self, items: List[dict], to_code: str, price_fields=("selling_price",)) -> List[dict]:
        """Copies of catalog rows with prices shown in ``to_code``."""
        converted = []
        for item in items:
            row = dict(item)
            from_code = row.get("currency") or self.base_currency
            for field in price_fields:
                if row.get(field) is not None:
                    row[field] = self.convert(row[field], from_code, to_code).converted_amount
            row["currency"] = to_code.upper()
            converted.append(row)
        return converted

    def convert_quotation_payload(self, payload: dict, to_code: str) -> Tuple[dict, Decimal]:
        """
        Re-price a quotation payload into ``to_code`` with one snapshot rate.

        Line unit prices, additional expense amounts and a fixed discount are
        converted; a percentage discount is left as is. Returns the converted
        payload and the rate that was applied.
        """
        to_code = to_code.upper()
        from_code = (payload.get("currency") or self.base_currency).upper()
        converted = copy.deepcopy(payload)
        if from_code == to_code:
            converted["currency"] = to_code
            return converted, NEUTRAL_RATE

        rate = self.cross_rate(from_code, to_code)

        for item in converted.get("items") or []:
            if item.get("unit_price") is not None:
                item["unit_price"] = round_money(to_decimal(item["unit_price"]) * rate)

        for expense in converted.get("additional_expenses") or []:
            expense["amount"] = round_money(to_decimal(expense.get("amount")) * rate)
            expense["currency"] = to_code

        if converted.get("discount_type") == FIXED and converted.get("discount_value"):
            converted["discount_value"] = round_money(to_decimal(converted["discount_value"]) * rate)

        converted["currency"] = to_code
        logger.info("Converted quotation payload %s -> %s at rate %s", from_code, to_code, rate)
        return converted, rate


# Shared process-wide instance
currency_service = CurrencyService()


def get_currency_service() -> CurrencyService:
    return currency_service
