"""
Prompts package for FolioOracle.
Builds the natural-language request sent to the oracle for each query type,
and defines the wire format the oracle is asked to answer in.

Every builder is a pure function: no I/O beyond the cached system prompt.
"""

import json
import os
from enum import Enum
from typing import Dict, Iterable, List, Sequence, Tuple

from models.enums import Exchange, HistoryRange

# Delimited key-value wire format. Multi-character separators so that decimal
# points, commas and currency text in the model's answer never split a pair.
PAIR_SEPARATOR = "|||"
KEY_VALUE_SEPARATOR = ":::"
NOT_AVAILABLE = "N/A"

# OHLCV / close-only series format
RECORD_SEPARATOR = ";"
FIELD_SEPARATOR = ":"

# Cache for loaded prompts
_prompt_cache: Dict[str, str] = {}


class BatchFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


def load_prompt(filename: str) -> str:
    """
    Load a prompt from a text file next to this module.

    Args:
        filename: Name of the prompt file (e.g., 'system_prompt.txt')

    Returns:
        Prompt content as string
    """
    if filename in _prompt_cache:
        return _prompt_cache[filename]

    prompt_dir = os.path.dirname(os.path.abspath(__file__))
    filepath = os.path.join(prompt_dir, filename)

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            content = f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Prompt file not found: {filepath}")

    _prompt_cache[filename] = content
    return content


def get_system_prompt() -> str:
    """Get the oracle's system prompt."""
    return load_prompt("system_prompt.txt")


def clear_prompt_cache():
    """Clear the prompt cache. Useful for reloading prompts during development."""
    _prompt_cache.clear()


# ==================== KEY SETS ====================
LOOKUP_KEYS: Dict[str, str] = {
    "TICKER": "Ticker Symbol",
    "NAME": "Full Company Name",
    "PRICE": "Latest Price",
    "YEARLY_DIVIDEND": "Annual Dividend per Share",
    "PE_RATIO": "Trailing P/E Ratio",
    "FORWARD_PE": "Forward P/E Ratio",
    "52_WEEK_LOW": "52-week Low Price",
    "52_WEEK_HIGH": "52-week High Price",
    "COMPANY_PROFILE": "Company profile in 2-3 sentences",
    "MARKET_CAP": "Market capitalization, abbreviated like 1.2T, 250B or 50M",
    "DIVIDEND_YIELD": "Dividend yield percentage as a number",
}

METRICS_KEYS: Dict[str, str] = {
    key: label for key, label in LOOKUP_KEYS.items()
    if key not in ("TICKER", "NAME", "PRICE")
}

# ==================== JSON SCHEMAS ====================
BATCH_PRICE_SCHEMA = {
    "type": "object",
    "properties": {
        "prices": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "ticker": {"type": "string"},
                    "exchange": {"type": "string"},
                    "price": {"type": ["number", "null"]},
                },
                "required": ["ticker", "exchange", "price"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["prices"],
    "additionalProperties": False,
}

NEWS_SCHEMA = {
    "type": "object",
    "properties": {
        "news": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "source": {"type": "string"},
                    "url": {"type": ["string", "null"]},
                    "publishedAt": {"type": "string"},
                },
                "required": ["title", "source", "url", "publishedAt"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["news"],
    "additionalProperties": False,
}

_NULLABLE_NUMBER = {"type": ["number", "null"]}

DETAILS_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "companyProfile": {"type": "string"},
        "currentPrice": {"type": "number"},
        "dayChange": _NULLABLE_NUMBER,
        "dayChangePercent": _NULLABLE_NUMBER,
        "marketCap": {"type": ["string", "null"]},
        "peRatio": _NULLABLE_NUMBER,
        "dividendYield": _NULLABLE_NUMBER,
        "fiftyTwoWeekLow": _NULLABLE_NUMBER,
        "fiftyTwoWeekHigh": _NULLABLE_NUMBER,
        "priceHistory": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "date": {"type": "string", "description": "Date in YYYY-MM-DD format"},
                    "close": {"type": "number"},
                },
                "required": ["date", "close"],
                "additionalProperties": False,
            },
        },
    },
    "required": [
        "name", "companyProfile", "currentPrice", "dayChange", "dayChangePercent",
        "marketCap", "peRatio", "dividendYield", "fiftyTwoWeekLow",
        "fiftyTwoWeekHigh", "priceHistory",
    ],
    "additionalProperties": False,
}


# ==================== BUILDERS ====================
def _key_value_template(keys: Dict[str, str]) -> str:
    return PAIR_SEPARATOR.join(
        f"{key}{KEY_VALUE_SEPARATOR}[{label}]" for key, label in keys.items()
    )


def _format_instructions(keys: Dict[str, str]) -> str:
    return (
        f"Provide the response as a single line of key-value pairs in the format: "
        f"\"{_key_value_template(keys)}\". "
        f"Separate each key from its value with \"{KEY_VALUE_SEPARATOR}\" and separate "
        f"pairs with \"{PAIR_SEPARATOR}\". "
        f"For any unavailable data, use \"{NOT_AVAILABLE}\" for the value. "
        f"Do not include currency symbols, thousands separators in numbers, "
        f"or any other text, explanation or line breaks."
    )


def build_lookup_prompt(query: str, exchange: Exchange, include_history: bool = False) -> str:
    """
    Prompt for a full lookup of a company name or ticker.

    Args:
        query: Free text typed by the user (ticker or company name)
        exchange: Exchange the security is listed on
        include_history: Also ask for a close-only price history for the past month
    """
    keys = dict(LOOKUP_KEYS)
    if include_history:
        keys["PRICE_HISTORY"] = (
            f"Daily closing prices for the past month as YYYY-MM-DD{FIELD_SEPARATOR}close "
            f"records separated by \"{RECORD_SEPARATOR}\""
        )
    return (
        f"Fetch the latest stock data for the company or ticker symbol \"{query}\" "
        f"listed on a {exchange.value} exchange. {_format_instructions(keys)}"
    )


def build_metrics_prompt(ticker: str, exchange: Exchange) -> str:
    """Prompt for the slow-changing metrics of a holding already in the portfolio."""
    return (
        f"Fetch the latest fundamental data for the stock with ticker symbol \"{ticker}\" "
        f"listed on a {exchange.value} exchange. {_format_instructions(METRICS_KEYS)}"
    )


def build_batch_price_prompt(
    pairs: Sequence[Tuple[str, Exchange]],
    response_format: BatchFormat = BatchFormat.TEXT
) -> str:
    """
    One prompt requesting the latest price for every (ticker, exchange) pair.

    Args:
        pairs: Tickers to price with their exchanges
        response_format: TEXT for delimited records, JSON for the BATCH_PRICE_SCHEMA shape
    """
    listing = "\n".join(f"- {ticker} ({exchange.value})" for ticker, exchange in pairs)
    header = f"Fetch the latest trading price for each of the following stocks:\n{listing}\n"

    if response_format == BatchFormat.JSON:
        return header + (
            "Respond with a JSON object of the form "
            "{\"prices\": [{\"ticker\": \"...\", \"exchange\": \"...\", \"price\": 0.0}]}, "
            "one entry per stock, using the ticker and exchange exactly as listed above. "
            "Use null for a price you cannot find."
        )

    example = KEY_VALUE_SEPARATOR.join(["[Ticker]", "[Exchange]", "[Price]"])
    return header + (
        f"Provide the response as a single line of records in the format \"{example}\", "
        f"separating records with \"{PAIR_SEPARATOR}\". Use the ticker and exchange "
        f"exactly as listed above. Use \"{NOT_AVAILABLE}\" for a price you cannot find. "
        f"Do not include currency symbols, thousands separators or any other text."
    )


_HISTORY_WINDOWS = {
    HistoryRange.ONE_DAY: "the most recent trading session",
    HistoryRange.FIVE_DAYS: "the past 5 trading days",
    HistoryRange.ONE_MONTH: "the past month",
    HistoryRange.ONE_YEAR: "the past year",
    HistoryRange.FIVE_YEARS: "the past 5 years",
    HistoryRange.TEN_YEARS: "the past 10 years",
}


def build_history_prompt(ticker: str, exchange: Exchange, history_range: HistoryRange) -> str:
    """Prompt for an OHLCV price series over a fixed range."""
    window = _HISTORY_WINDOWS[history_range]
    if history_range.is_intraday:
        interval = f"intraday prices at 15-minute intervals for {window}"
        label = "HH:MM"
    else:
        interval = f"daily open, high, low, close and volume for {window}"
        label = "YYYY-MM-DD"

    fields = FIELD_SEPARATOR.join([label, "open", "high", "low", "close", "volume"])
    return (
        f"Provide {interval} for the stock with ticker symbol \"{ticker}\" on a "
        f"{exchange.value} exchange. Output the data as records in the format "
        f"\"{fields}\", separating records with \"{RECORD_SEPARATOR}\", ordered from "
        f"oldest to newest. Do not include headers, currency symbols, thousands "
        f"separators or any other text."
    )


def build_news_prompt(ticker: str, exchange: Exchange) -> str:
    """Prompt for the top 5 recent news articles about a ticker."""
    return (
        f"Find the 5 most recent news articles about the stock with ticker symbol "
        f"\"{ticker}\" on a {exchange.value} exchange. For each article give the title, "
        f"the source, a direct URL (or null if unknown) and the published date, either "
        f"relative (e.g. \"2h ago\", \"Yesterday\") or absolute (YYYY-MM-DD)."
    )


def build_details_prompt(ticker: str, exchange: Exchange) -> str:
    """Prompt for everything the ticker detail page shows (JSON mode)."""
    return (
        f"Fetch detailed information for the stock with ticker symbol \"{ticker}\" on a "
        f"{exchange.value} exchange. Provide the following data points:\n"
        f"- Full company name\n"
        f"- A brief company profile (2-3 sentences)\n"
        f"- Current stock price\n"
        f"- Today's price change absolute value\n"
        f"- Today's price change percentage\n"
        f"- Market capitalization (e.g., \"1.2T\", \"250B\", \"50M\")\n"
        f"- Price-to-Earnings (P/E) ratio\n"
        f"- Dividend yield percentage\n"
        f"- 52-week low price\n"
        f"- 52-week high price\n"
        f"- Daily closing prices for the past 365 days.\n"
    )


def build_exchange_rate_prompt() -> str:
    """Prompt for the CAD to USD conversion rate."""
    return (
        "What is the current exchange rate for converting Canadian Dollars (CAD) to "
        "US Dollars (USD)? Provide only the numeric value, with no other text or formatting."
    )


def build_chart_prompt(ticker: str, closes: Iterable[float]) -> str:
    """Prompt asking the oracle to draw a price line chart as inline SVG."""
    data: List[float] = list(closes)
    return (
        f"Generate an SVG line chart for the stock price history of {ticker}.\n"
        f"The data represents consecutive closing prices, oldest first.\n"
        f"Data: {json.dumps(data)}\n"
        f"The SVG element should have width=\"100%\" and height=\"300\".\n"
        f"The background should be transparent. Do not add a <rect> for the background.\n"
        f"The line should be stroked with a linear gradient with the ID \"priceGradient\", "
        f"going from #4F46E5 at the start of the timeline to #10B981 at the end.\n"
        f"The stroke width of the line should be 2.\n"
        f"Add a subtle light gray (#4B5563) dashed grid with 4 horizontal lines in the background.\n"
        f"Do not include any axes, labels, text, or circles on the data points.\n"
        f"The SVG path should be scaled to fit the entire viewbox of the SVG."
    )
