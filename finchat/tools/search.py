"""Market-data and web search tools backed by Twelve Data, Alpha Vantage, Massive (Polygon.io) and Brave Search."""

from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from finchat.config import SearchConfig
from finchat.tools.registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

TWELVE_DATA_URL = "https://api.twelvedata.com"
ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"
MASSIVE_URL = "https://api.polygon.io"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
SEC_DOMAINS = ["sec.gov", "edgar.sec.gov"]


class SearchError(Exception):
    pass


class FinancialSearchArgs(BaseModel):
    symbol: str = Field(min_length=1)
    dataType: Literal["quote", "time_series", "earnings", "fundamentals", "technical", "news"]
    interval: Literal["1min", "5min", "15min", "30min", "1h", "4h", "1day", "1week", "1month"] = "1day"
    outputSize: int = Field(default=30, ge=1, le=100)


class OptionsSearchArgs(BaseModel):
    symbol: str = Field(min_length=1)
    expirationDate: Optional[str] = None
    contractType: Optional[Literal["call", "put"]] = None


class MassiveSearchArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(min_length=1)
    dataType: Literal["snapshot", "aggregates", "dividends", "splits", "financials", "ticker_details"]
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    timespan: Literal["minute", "hour", "day", "week", "month"] = "day"


class WebSearchArgs(BaseModel):
    query: str = Field(min_length=1)
    maxResults: int = Field(default=10, ge=1, le=20)
    freshness: Optional[Literal["day", "week", "month", "year"]] = None


class SecFilingsSearchArgs(BaseModel):
    query: str = Field(min_length=1)
    maxResults: int = Field(default=10, ge=1, le=20)


class SearchClient:
    def __init__(self, config: SearchConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport
        self._timeout_s = max(1.0, config.timeout_ms / 1000.0)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def twelve_data(self, endpoint: str, params: dict[str, str]) -> dict[str, Any]:
        if not self._config.twelve_data_api_key:
            raise SearchError("TWELVE_DATA_API_KEY not configured")
        async with self._client() as client:
            resp = await client.get(
                f"{TWELVE_DATA_URL}{endpoint}",
                params={**params, "apikey": self._config.twelve_data_api_key},
            )
        if resp.status_code >= 400:
            raise SearchError(f"Twelve Data API error: {resp.status_code}")
        data = resp.json()
        if isinstance(data, dict) and data.get("status") == "error":
            raise SearchError(data.get("message") or "Twelve Data API error")
        return data

    async def alpha_vantage(self, function: str, params: dict[str, str]) -> dict[str, Any]:
        if not self._config.alpha_vantage_api_key:
            raise SearchError("ALPHA_VANTAGE_API_KEY not configured")
        async with self._client() as client:
            resp = await client.get(
                ALPHA_VANTAGE_URL,
                params={**params, "function": function, "apikey": self._config.alpha_vantage_api_key},
            )
        if resp.status_code >= 400:
            raise SearchError(f"Alpha Vantage API error: {resp.status_code}")
        data = resp.json()
        if data.get("Error Message"):
            raise SearchError(data["Error Message"])
        if data.get("Note"):
            raise SearchError("Alpha Vantage rate limit reached. Try again later.")
        return data

    async def massive(self, endpoint: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        if not self._config.massive_api_key:
            raise SearchError("MASSIVE_API_KEY not configured")
        async with self._client() as client:
            resp = await client.get(
                f"{MASSIVE_URL}{endpoint}",
                params={**(params or {}), "apiKey": self._config.massive_api_key},
            )
        if resp.status_code >= 400:
            raise SearchError(f"Massive API error: {resp.status_code} - {resp.text[:200]}")
        return resp.json()

    async def brave(
        self,
        query: str,
        *,
        count: int = 10,
        domains: list[str] | None = None,
        freshness: str | None = None,
    ) -> dict[str, Any]:
        if not self._config.brave_api_key:
            raise SearchError("BRAVE_SEARCH_API_KEY not configured")
        q = query
        if domains:
            q = f"{query} ({' OR '.join(f'site:{d}' for d in domains)})"
        params: dict[str, str] = {"q": q, "count": str(count)}
        if freshness:
            params["freshness"] = freshness
        async with self._client() as client:
            resp = await client.get(
                BRAVE_SEARCH_URL,
                params=params,
                headers={"Accept": "application/json", "X-Subscription-Token": self._config.brave_api_key},
            )
        if resp.status_code >= 400:
            raise SearchError(f"Brave Search API error: {resp.status_code}")
        return resp.json()


def _format_web_results(kind: str, query: str, response: dict[str, Any]) -> str | None:
    results = (response.get("web") or {}).get("results") or []
    if not results:
        return None
    return json.dumps(
        {
            "type": kind,
            "query": query,
            "resultCount": len(results),
            "results": [
                {
                    "title": r.get("title"),
                    "url": r.get("url"),
                    "description": r.get("description"),
                    "age": r.get("age"),
                }
                for r in results
            ],
        },
        indent=2,
        ensure_ascii=False,
    )


def _search_failure(exc: Exception, label: str, key_hint: str) -> str:
    message = str(exc)
    if "not configured" in message:
        return f"🔐 {message}. Please set up your {key_hint}."
    if "rate limit" in message.lower() or "429" in message:
        return "⏱️ Rate limit exceeded. Please try again in a moment."
    return f"❌ Error {label}: {message or 'Unknown error'}"


def build_search_tools(client: SearchClient) -> list[ToolSpec]:
    async def financial_search(args: FinancialSearchArgs, ctx: ToolContext) -> str:
        symbol = args.symbol
        try:
            if args.dataType == "quote":
                data: Any = await client.twelve_data("/quote", {"symbol": symbol})
            elif args.dataType == "time_series":
                data = await client.twelve_data(
                    "/time_series",
                    {"symbol": symbol, "interval": args.interval, "outputsize": str(args.outputSize)},
                )
            elif args.dataType == "earnings":
                data = await client.twelve_data("/earnings", {"symbol": symbol})
            elif args.dataType == "fundamentals":
                data = {
                    "income_statement": await client.twelve_data("/income_statement", {"symbol": symbol}),
                    "balance_sheet": await client.twelve_data("/balance_sheet", {"symbol": symbol}),
                }
            elif args.dataType == "technical":
                data = {
                    "rsi": await client.alpha_vantage(
                        "RSI", {"symbol": symbol, "interval": "daily", "time_period": "14", "series_type": "close"}
                    ),
                    "macd": await client.alpha_vantage(
                        "MACD", {"symbol": symbol, "interval": "daily", "series_type": "close"}
                    ),
                }
            else:
                data = await client.alpha_vantage("NEWS_SENTIMENT", {"tickers": symbol, "limit": str(args.outputSize)})
        except (SearchError, httpx.HTTPError) as exc:
            logger.warning("financialSearch failed symbol=%s type=%s error=%s", symbol, args.dataType, exc)
            return _search_failure(exc, "fetching financial data", "API keys")
        return json.dumps(
            {"type": "financial_data", "symbol": symbol, "dataType": args.dataType, "data": data},
            indent=2,
            ensure_ascii=False,
        )

    async def options_search(args: OptionsSearchArgs, ctx: ToolContext) -> str:
        params = {"underlying_ticker": args.symbol, "limit": "50"}
        if args.expirationDate:
            params["expiration_date"] = args.expirationDate
        if args.contractType:
            params["contract_type"] = args.contractType
        try:
            result = await client.massive("/v3/reference/options/contracts", params)
        except (SearchError, httpx.HTTPError) as exc:
            logger.warning("optionsSearch failed symbol=%s error=%s", args.symbol, exc)
            return _search_failure(exc, "fetching options data", "Massive API key")
        contracts = result.get("results") or []
        if not contracts:
            return f'🔍 No options contracts found for "{args.symbol}". Check if the symbol is correct.'
        return json.dumps(
            {
                "type": "options_data",
                "symbol": args.symbol,
                "expirationDate": args.expirationDate,
                "contractType": args.contractType,
                "contractCount": len(contracts),
                "contracts": [
                    {
                        "ticker": c.get("ticker"),
                        "expirationDate": c.get("expiration_date"),
                        "strikePrice": c.get("strike_price"),
                        "contractType": c.get("contract_type"),
                        "shares": c.get("shares_per_contract"),
                    }
                    for c in contracts[:20]
                ],
            },
            indent=2,
            ensure_ascii=False,
        )

    async def massive_search(args: MassiveSearchArgs, ctx: ToolContext) -> str:
        symbol = args.symbol
        try:
            if args.dataType == "snapshot":
                data = await client.massive(f"/v2/snapshot/locale/us/markets/stocks/tickers/{symbol}")
            elif args.dataType == "aggregates":
                start = args.from_ or (date.today() - timedelta(days=30)).isoformat()
                end = args.to or date.today().isoformat()
                data = await client.massive(
                    f"/v2/aggs/ticker/{symbol}/range/1/{args.timespan}/{start}/{end}", {"limit": "100"}
                )
            elif args.dataType == "dividends":
                data = await client.massive("/v3/reference/dividends", {"ticker": symbol, "limit": "20"})
            elif args.dataType == "splits":
                data = await client.massive("/v3/reference/splits", {"ticker": symbol, "limit": "20"})
            elif args.dataType == "financials":
                data = await client.massive("/vX/reference/financials", {"ticker": symbol, "limit": "4"})
            else:
                data = await client.massive(f"/v3/reference/tickers/{symbol}")
        except (SearchError, httpx.HTTPError) as exc:
            logger.warning("massiveSearch failed symbol=%s type=%s error=%s", symbol, args.dataType, exc)
            return _search_failure(exc, "fetching Massive data", "Massive API key")
        return json.dumps(
            {"type": "massive_data", "symbol": symbol, "dataType": args.dataType, "data": data},
            indent=2,
            ensure_ascii=False,
        )

    async def web_search(args: WebSearchArgs, ctx: ToolContext) -> str:
        try:
            response = await client.brave(args.query, count=args.maxResults, freshness=args.freshness)
        except (SearchError, httpx.HTTPError) as exc:
            logger.warning("webSearch failed query=%s error=%s", args.query, exc)
            return _search_failure(exc, "performing web search", "Brave Search API key")
        formatted = _format_web_results("web_search", args.query, response)
        return formatted or f'🔍 No web results found for "{args.query}". Try different keywords.'

    async def sec_filings_search(args: SecFilingsSearchArgs, ctx: ToolContext) -> str:
        try:
            response = await client.brave(args.query, count=args.maxResults, domains=SEC_DOMAINS)
        except (SearchError, httpx.HTTPError) as exc:
            logger.warning("secFilingsSearch failed query=%s error=%s", args.query, exc)
            return _search_failure(exc, "searching SEC filings", "Brave Search API key")
        formatted = _format_web_results("sec_filings_search", args.query, response)
        return formatted or f'🔍 No SEC filings found for "{args.query}". Try different keywords or company name.'

    return [
        ToolSpec(
            name="financialSearch",
            description=(
                "Search financial market data: quotes, time series, earnings and fundamentals (Twelve Data), "
                "technical indicators and news sentiment (Alpha Vantage)."
            ),
            args_model=FinancialSearchArgs,
            executor=financial_search,
        ),
        ToolSpec(
            name="optionsSearch",
            description=(
                "Search options chain data for a US stock using Massive (Polygon.io): contracts, strikes and "
                "expirations. Free tier allows 5 calls per minute."
            ),
            args_model=OptionsSearchArgs,
            executor=options_search,
        ),
        ToolSpec(
            name="massiveSearch",
            description=(
                "Search market data using Massive (Polygon.io): snapshots, aggregate bars, dividends, splits, "
                "financials and ticker details for stocks, indices, forex and crypto."
            ),
            args_model=MassiveSearchArgs,
            executor=massive_search,
        ),
        ToolSpec(
            name="webSearch",
            description="Search the web for general information using Brave Search. Cite results as [n].",
            args_model=WebSearchArgs,
            executor=web_search,
        ),
        ToolSpec(
            name="secFilingsSearch",
            description="Search SEC EDGAR filings (10-K, 10-Q, 8-K, Form 4, DEF 14A) restricted to sec.gov.",
            args_model=SecFilingsSearchArgs,
            executor=sec_filings_search,
        ),
    ]
