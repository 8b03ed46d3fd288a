"""
Response parser for oracle replies.
Turns delimited text and JSON answers into the typed records in services.records.

All tolerance for malformed or partial output lives here: a missing or
unparseable field becomes None, a broken series record is dropped. Only JSON
that cannot be decoded at all is reported, as OracleMalformedResponseError.
"""

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional

from exceptions import OracleMalformedResponseError
from models.enums import Exchange
from prompts import (
    FIELD_SEPARATOR,
    KEY_VALUE_SEPARATOR,
    NOT_AVAILABLE,
    PAIR_SEPARATOR,
    RECORD_SEPARATOR,
)
from services.records import (
    BatchPrice,
    NewsItem,
    PriceHistoryPoint,
    QuoteUpdate,
    StockSnapshot,
    TickerDetails,
    TickerMetrics,
)

logger = logging.getLogger(__name__)

OHLCV_FIELD_COUNT = 5  # open, high, low, close, volume

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_NUMBER_RE = re.compile(r"[-+]?\d*\.?\d+(?:[eE][-+]?\d+)?")
_SVG_RE = re.compile(r"<svg\b.*?</svg>", re.IGNORECASE | re.DOTALL)

_EXCHANGE_ALIASES = {
    "USA": Exchange.USA,
    "US": Exchange.USA,
    "NYSE": Exchange.USA,
    "NASDAQ": Exchange.USA,
    "CANADA": Exchange.CANADA,
    "CA": Exchange.CANADA,
    "CAN": Exchange.CANADA,
    "TSX": Exchange.CANADA,
}


# ==================== PRIMITIVES ====================
def _normalize_key(key: str) -> str:
    return re.sub(r"[\s_\-\"'`*]", "", key).upper()


def _strip_wrapping(text: str) -> str:
    """Remove surrounding whitespace, quotes and markdown code fences."""
    return _FENCE_RE.sub("", text.strip()).strip().strip('"').strip()


def _is_not_available(value: str) -> bool:
    return value.strip().upper() == NOT_AVAILABLE


def parse_key_values(text: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Parse "KEY:::value|||KEY:::value" into a case-insensitive mapping.

    Keys are normalized (upper case, no underscores or spaces). Values are
    trimmed; an empty value or the "N/A" sentinel maps to None. Pairs without
    a key-value separator are ignored.
    """
    result: Dict[str, Optional[str]] = {}
    if not text:
        return result

    for pair in _strip_wrapping(text).split(PAIR_SEPARATOR):
        if KEY_VALUE_SEPARATOR not in pair:
            continue
        key, _, value = pair.partition(KEY_VALUE_SEPARATOR)
        key = _normalize_key(key)
        if not key:
            continue
        value = value.strip().strip('"').strip()
        result[key] = None if not value or _is_not_available(value) else value
    return result


def get_value(values: Dict[str, Optional[str]], *keys: str) -> Optional[str]:
    """First non-null value among the given keys (any case or spelling of underscores)."""
    for key in keys:
        value = values.get(_normalize_key(key))
        if value is not None:
            return value
    return None


def parse_number(value: Any) -> Optional[float]:
    """
    Coerce an oracle value to float.

    Thousands separators, a leading "$" and a trailing "%" are ignored.
    Anything unparseable, "N/A", NaN or infinity yields None. Never raises.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).strip().replace(",", "")
    text = text.lstrip("$").rstrip("%").strip()
    if not text or _is_not_available(text):
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_exchange(value: Optional[str]) -> Optional[Exchange]:
    if not value:
        return None
    return _EXCHANGE_ALIASES.get(value.strip().upper())


def _load_json(text: Optional[str], what: str) -> Any:
    if not text or not text.strip():
        raise OracleMalformedResponseError(f"Empty {what} response")
    try:
        return json.loads(_strip_wrapping(text))
    except json.JSONDecodeError as e:
        raise OracleMalformedResponseError(f"Could not decode {what} response as JSON: {e}") from e


# ==================== DELIMITED RECORDS ====================
def _metrics_from(values: Dict[str, Optional[str]]) -> TickerMetrics:
    return TickerMetrics(
        yearly_dividend=parse_number(get_value(values, "YEARLY_DIVIDEND")),
        pe_ratio=parse_number(get_value(values, "PE_RATIO")),
        forward_pe_ratio=parse_number(get_value(values, "FORWARD_PE", "FORWARD_PE_RATIO")),
        fifty_two_week_low=parse_number(get_value(values, "52_WEEK_LOW")),
        fifty_two_week_high=parse_number(get_value(values, "52_WEEK_HIGH")),
        company_profile=get_value(values, "COMPANY_PROFILE"),
        market_cap=get_value(values, "MARKET_CAP"),
        dividend_yield=parse_number(get_value(values, "DIVIDEND_YIELD")),
    )


def parse_stock_snapshot(text: Optional[str]) -> Optional[StockSnapshot]:
    """
    Parse a full-lookup reply.

    Ticker, name and price are essential: if any of them is missing the whole
    reply is rejected (None) even when every other field parsed.
    """
    values = parse_key_values(text)
    ticker = get_value(values, "TICKER")
    name = get_value(values, "NAME")
    price = parse_number(get_value(values, "PRICE", "CURRENT_PRICE"))

    if not ticker or not name or price is None:
        logger.error(f"Failed to parse essential fields (TICKER, NAME or PRICE) from response: {text!r}")
        return None

    return StockSnapshot(
        ticker=ticker.upper(),
        name=name,
        price=price,
        metrics=_metrics_from(values),
        price_history=parse_close_series(get_value(values, "PRICE_HISTORY")),
    )


def parse_ticker_metrics(text: Optional[str]) -> Optional[TickerMetrics]:
    """
    Parse a metrics-only refresh reply.
    Returns None when not a single field could be read (nothing to update).
    """
    metrics = _metrics_from(parse_key_values(text))
    if metrics.is_empty():
        logger.info(f"Metrics response contained no usable fields: {text!r}")
        return None
    return metrics


def parse_quote_update(text: Optional[str]) -> QuoteUpdate:
    """
    Parse a full-lookup reply for a holding already in the portfolio.
    No essential-field gate: a missing price or metric is simply not updated.
    """
    values = parse_key_values(text)
    return QuoteUpdate(
        price=parse_number(get_value(values, "PRICE", "CURRENT_PRICE")),
        metrics=_metrics_from(values),
        price_history=parse_close_series(get_value(values, "PRICE_HISTORY")),
    )


def parse_batch_prices_text(text: Optional[str]) -> List[BatchPrice]:
    """Parse "TICKER:::EXCHANGE:::PRICE|||..." records; malformed records are dropped."""
    prices: List[BatchPrice] = []
    if not text:
        return prices

    for record in _strip_wrapping(text).split(PAIR_SEPARATOR):
        parts = [part.strip() for part in record.split(KEY_VALUE_SEPARATOR)]
        if len(parts) != 3:
            continue
        ticker, exchange_text, price_text = parts
        exchange = parse_exchange(exchange_text)
        price = parse_number(price_text)
        if not ticker or exchange is None or price is None:
            continue
        prices.append(BatchPrice(ticker=ticker.upper(), exchange=exchange, price=price))
    return prices


def parse_batch_prices_json(text: Optional[str]) -> List[BatchPrice]:
    """Parse a JSON batch price reply: a list, or an object with a "prices" list."""
    data = _load_json(text, "batch price")
    if isinstance(data, dict):
        data = data.get("prices", [])
    if not isinstance(data, list):
        raise OracleMalformedResponseError("Batch price response is not a list")

    prices: List[BatchPrice] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        ticker = entry.get("ticker")
        exchange = parse_exchange(entry.get("exchange"))
        price = parse_number(entry.get("price"))
        if not isinstance(ticker, str) or not ticker.strip() or exchange is None or price is None:
            continue
        prices.append(BatchPrice(ticker=ticker.strip().upper(), exchange=exchange, price=price))
    return prices


# ==================== SERIES ====================
def parse_ohlcv_series(text: Optional[str]) -> List[PriceHistoryPoint]:
    """
    Parse "label:open:high:low:close:volume;..." into ordered points.

    Fields are read from the right: the last five tokens are numeric and
    everything before them is the label, so "09:30:..." timestamps survive.
    Records with fewer than six tokens or a bad number are dropped.
    """
    points: List[PriceHistoryPoint] = []
    if not text:
        return points

    for record in _strip_wrapping(text).split(RECORD_SEPARATOR):
        tokens = record.strip().split(FIELD_SEPARATOR)
        if len(tokens) < OHLCV_FIELD_COUNT + 1:
            continue
        label = FIELD_SEPARATOR.join(tokens[:-OHLCV_FIELD_COUNT]).strip()
        numbers = [parse_number(token) for token in tokens[-OHLCV_FIELD_COUNT:]]
        if not label or any(number is None for number in numbers):
            continue
        open_, high, low, close, volume = numbers
        points.append(PriceHistoryPoint(
            label=label, close=close, open=open_, high=high, low=low, volume=volume
        ))
    return points


def parse_close_series(text: Optional[str]) -> List[PriceHistoryPoint]:
    """Parse "date:close;..." pairs. Malformed pairs are dropped."""
    points: List[PriceHistoryPoint] = []
    if not text:
        return points

    for record in _strip_wrapping(text).split(RECORD_SEPARATOR):
        label, sep, close_text = record.strip().rpartition(FIELD_SEPARATOR)
        close = parse_number(close_text)
        if not sep or not label.strip() or close is None:
            continue
        points.append(PriceHistoryPoint(label=label.strip(), close=close))
    return points


# ==================== JSON DOCUMENTS ====================
def parse_news_json(text: Optional[str], limit: int = 5) -> List[NewsItem]:
    """Parse a news reply: a list of articles, or an object with a "news" list."""
    data = _load_json(text, "news")
    if isinstance(data, dict):
        data = data.get("news", data.get("articles", []))
    if not isinstance(data, list):
        raise OracleMalformedResponseError("News response is not a list")

    items: List[NewsItem] = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("title"):
            continue
        items.append(NewsItem(
            title=str(entry["title"]).strip(),
            source=str(entry.get("source") or "").strip(),
            url=entry.get("url") or None,
            published_at=str(entry.get("publishedAt") or entry.get("published_at") or "").strip(),
        ))
    return items[:limit]


def parse_ticker_details_json(text: Optional[str]) -> Optional[TickerDetails]:
    """
    Parse a ticker detail reply (DETAILS_SCHEMA).
    Returns None when name or current price is missing.
    """
    data = _load_json(text, "ticker details")
    if not isinstance(data, dict):
        raise OracleMalformedResponseError("Ticker details response is not an object")

    name = data.get("name")
    current_price = parse_number(data.get("currentPrice"))
    if not name or current_price is None:
        logger.error(f"Ticker details missing name or current price: {text!r}")
        return None

    history: List[PriceHistoryPoint] = []
    for entry in data.get("priceHistory") or []:
        if not isinstance(entry, dict):
            continue
        close = parse_number(entry.get("close"))
        if entry.get("date") and close is not None:
            history.append(PriceHistoryPoint(label=str(entry["date"]), close=close))

    return TickerDetails(
        name=str(name),
        current_price=current_price,
        company_profile=str(data.get("companyProfile") or ""),
        day_change=parse_number(data.get("dayChange")),
        day_change_percent=parse_number(data.get("dayChangePercent")),
        market_cap=data.get("marketCap") or None,
        pe_ratio=parse_number(data.get("peRatio")),
        dividend_yield=parse_number(data.get("dividendYield")),
        fifty_two_week_low=parse_number(data.get("fiftyTwoWeekLow")),
        fifty_two_week_high=parse_number(data.get("fiftyTwoWeekHigh")),
        price_history=history,
    )


# ==================== SCALARS ====================
def parse_exchange_rate(text: Optional[str]) -> Optional[float]:
    """First number in the reply, if it is a positive rate."""
    if not text:
        return None
    match = _NUMBER_RE.search(text.replace(",", ""))
    if not match:
        return None
    rate = parse_number(match.group(0))
    return rate if rate is not None and rate > 0 else None


def extract_svg(text: Optional[str]) -> Optional[str]:
    """Return the first <svg>...</svg> span in the reply, or None."""
    if not text:
        return None
    match = _SVG_RE.search(text)
    return match.group(0) if match else None
