import asyncio
import json

import httpx

from finchat.config import SearchConfig
from finchat.storage import InMemoryStore
from finchat.tools import ToolCallState, ToolContext, ToolRegistry, ToolSpec
from finchat.tools.artifacts import ARTIFACT_TOOLS, CreateCsvArgs, create_csv, csv_content
from finchat.tools.code_execution import RunResult, build_code_tool
from finchat.tools.search import SearchClient, build_search_tools


def _ctx(store=None, user_id="u1"):
    return ToolContext(user_id=user_id, session_id=None, store=store or InMemoryStore())


def _registry(*specs, timeout_ms=30000):
    registry = ToolRegistry(timeout_ms=timeout_ms)
    for spec in specs:
        registry.register(spec)
    return registry


def test_unknown_tool_is_rejected():
    outcome = asyncio.run(_registry().invoke("nope", {}, _ctx()))
    assert outcome.state == ToolCallState.REJECTED
    assert outcome.transitions == [ToolCallState.PENDING, ToolCallState.VALIDATING, ToolCallState.REJECTED]
    assert "error" in outcome.output


def test_invalid_arguments_are_rejected_before_execution():
    registry = _registry(*ARTIFACT_TOOLS)
    outcome = asyncio.run(registry.invoke("createChart", {"title": "x", "type": "pie", "dataSeries": []}, _ctx()))
    assert outcome.state == ToolCallState.REJECTED
    assert ToolCallState.EXECUTING not in outcome.transitions


def test_executor_exception_becomes_failed_output():
    async def boom(args, ctx):
        raise RuntimeError("upstream exploded")

    spec = ToolSpec(name="boom", description="", args_model=CreateCsvArgs, executor=boom)
    outcome = asyncio.run(_registry(spec).invoke("boom", {"title": "t", "headers": ["a"], "rows": []}, _ctx()))
    assert outcome.state == ToolCallState.FAILED
    assert outcome.output == {"error": "upstream exploded"}


def test_slow_tool_times_out():
    async def slow(args, ctx):
        await asyncio.sleep(5)

    spec = ToolSpec(name="slow", description="", args_model=CreateCsvArgs, executor=slow)
    registry = _registry(spec, timeout_ms=100)
    outcome = asyncio.run(registry.invoke("slow", {"title": "t", "headers": ["a"], "rows": []}, _ctx()))
    assert outcome.state == ToolCallState.FAILED
    assert "timed out" in outcome.error


def test_csv_rows_must_match_header_count():
    store = InMemoryStore()
    args = CreateCsvArgs(title="Bad", headers=["Year", "Revenue"], rows=[["2023", "100"], ["2024"]])
    out = asyncio.run(create_csv(args, _ctx(store)))
    assert out["error"] is True
    assert out["expectedColumns"] == 2
    assert out["invalidRowCount"] == 1
    assert "CSV Validation Error" in out["message"]


def test_csv_is_saved_and_embeddable():
    store = InMemoryStore()
    args = CreateCsvArgs(title="Revenue", headers=["Year", "Revenue"], rows=[[2023, 383.3], [2024, "391,0"]])
    out = asyncio.run(create_csv(args, _ctx(store)))
    assert out["rowCount"] == 2
    assert f"![csv](csv:{out['csvId']})" in out["_instructions"]
    saved = store.get_csv(out["csvId"])
    assert saved.rows == [["2023", "383.3"], ["2024", "391,0"]]
    assert out["csvContent"].splitlines()[-1] == '2024,"391,0"'


def test_csv_content_quotes_special_cells():
    assert csv_content(["a", "b"], [['say "hi"', "x\ny"]]) == 'a,b\n"say ""hi""","x\ny"'


def test_chart_without_user_is_not_saved():
    registry = _registry(*ARTIFACT_TOOLS)
    chart = {"title": "T", "type": "bar", "dataSeries": [{"name": "s", "data": [{"x": "Q1", "y": 1}]}]}
    outcome = asyncio.run(registry.invoke("createChart", chart, _ctx(user_id=None)))
    assert outcome.ok
    assert "chartId" not in outcome.output
    assert outcome.output["metadata"]["totalDataPoints"] == 1


class _Runner:
    def __init__(self, result):
        self.result = result

    async def run(self, code):
        return self.result


def test_code_execution_formats_output_and_errors():
    ok = build_code_tool(_Runner(RunResult(0, "42\n")))
    out = asyncio.run(_registry(ok).invoke("codeExecution", {"code": "print(6*7)"}, _ctx()))
    assert "**Output:**" in out.output and "42" in out.output

    bad = build_code_tool(_Runner(RunResult(1, "NameError: name 'x' is not defined")))
    out = asyncio.run(_registry(bad).invoke("codeExecution", {"code": "print(x)"}, _ctx()))
    assert out.output.startswith("❌ **Execution Error**")
    assert "Tip" in out.output

    short = build_code_tool(None, max_chars=5)
    out = asyncio.run(_registry(short).invoke("codeExecution", {"code": "print(123456)"}, _ctx()))
    assert "Code too long" in out.output


def test_sec_search_restricts_domains_and_returns_citable_results():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["q"] = request.url.params["q"]
        return httpx.Response(200, json={"web": {"results": [{"title": "10-K", "url": "https://sec.gov/x"}]}})

    client = SearchClient(
        SearchConfig(brave_api_key="k", twelve_data_api_key="", alpha_vantage_api_key="", massive_api_key="", timeout_ms=1000),
        transport=httpx.MockTransport(handler),
    )
    registry = _registry(*build_search_tools(client))
    outcome = asyncio.run(registry.invoke("secFilingsSearch", {"query": "Apple 10-K"}, _ctx()))
    assert "site:sec.gov" in seen["q"]
    assert json.loads(outcome.output)["results"][0]["title"] == "10-K"


def test_missing_search_key_is_reported_not_raised():
    client = SearchClient(SearchConfig(brave_api_key="", twelve_data_api_key="", alpha_vantage_api_key="", massive_api_key="", timeout_ms=1000))
    registry = _registry(*build_search_tools(client))
    outcome = asyncio.run(registry.invoke("financialSearch", {"symbol": "AAPL", "dataType": "quote"}, _ctx()))
    assert outcome.ok
    assert outcome.output.startswith("🔐")


def _massive_client(handler, key="mk"):
    config = SearchConfig(brave_api_key="", twelve_data_api_key="", alpha_vantage_api_key="", massive_api_key=key, timeout_ms=1000)
    return SearchClient(config, transport=httpx.MockTransport(handler))


def test_options_search_summarizes_contracts():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        contract = {"ticker": "O:AAPL250117C00150000", "expiration_date": "2025-01-17", "strike_price": 150,
                    "contract_type": "call", "shares_per_contract": 100}
        return httpx.Response(200, json={"results": [contract] * 25})

    registry = _registry(*build_search_tools(_massive_client(handler)))
    outcome = asyncio.run(registry.invoke("optionsSearch", {"symbol": "AAPL", "contractType": "call"}, _ctx()))

    assert seen["path"] == "/v3/reference/options/contracts"
    assert seen["params"]["underlying_ticker"] == "AAPL"
    assert seen["params"]["contract_type"] == "call"
    assert seen["params"]["apiKey"] == "mk"
    body = json.loads(outcome.output)
    assert body["type"] == "options_data"
    assert body["contractCount"] == 25
    assert len(body["contracts"]) == 20
    assert body["contracts"][0]["strikePrice"] == 150


def test_massive_search_aggregates_and_rate_limit():
    def handler(request: httpx.Request) -> httpx.Response:
        if "/v2/aggs/ticker/AAPL/range/1/week/2024-01-01/2024-03-01" in request.url.path:
            return httpx.Response(200, json={"results": [{"c": 150.25}]})
        return httpx.Response(429, text="Too Many Requests")

    registry = _registry(*build_search_tools(_massive_client(handler)))
    args = {"symbol": "AAPL", "dataType": "aggregates", "from": "2024-01-01", "to": "2024-03-01", "timespan": "week"}
    body = json.loads(asyncio.run(registry.invoke("massiveSearch", args, _ctx())).output)
    assert body["type"] == "massive_data"
    assert body["data"]["results"][0]["c"] == 150.25

    limited = asyncio.run(registry.invoke("massiveSearch", {"symbol": "AAPL", "dataType": "splits"}, _ctx()))
    assert limited.output.startswith("⏱️")


def test_massive_tools_report_missing_key():
    registry = _registry(*build_search_tools(_massive_client(lambda request: httpx.Response(200), key="")))
    outcome = asyncio.run(registry.invoke("optionsSearch", {"symbol": "AAPL"}, _ctx()))
    assert outcome.ok
    assert "MASSIVE_API_KEY" in outcome.output
