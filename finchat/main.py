import asyncio
import json
import logging
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse

from finchat.config import AppConfig, settings
from finchat.errors import ChatError
from finchat.logging import setup_logging
from finchat.metrics import metrics
from finchat.orchestrator import ChatOrchestrator, EngineSelector, TurnRequest
from finchat.providers.anthropic_engine import select_claude_model
from finchat.providers.selection import ProviderPreferences, select_engine
from finchat.report.charts import render_chart_page
from finchat.report.rasterize import ChartRasterizer, PillowChartRasterizer
from finchat.report.renderer import ChartCache, chart_png, render_report
from finchat.security import AuthContext, require_auth
from finchat.storage import Store, build_store
from finchat.tools import ToolRegistry, build_registry
from finchat.types import Message, parse_parts

load_dotenv()
app = FastAPI(title="finchat")
logger = logging.getLogger("finchat")

store: Store | None = None
registry: ToolRegistry | None = None
orchestrator: ChatOrchestrator | None = None
rasterizer: ChartRasterizer = PillowChartRasterizer()
chart_cache = ChartCache(max_size=settings.report.chart_cache_size)
claude_model: str | None = None


def configure(
    *,
    store_: Store,
    registry_: ToolRegistry,
    selector: EngineSelector | None = None,
    config: AppConfig = settings,
) -> ChatOrchestrator:
    """Wire the process-wide collaborators. Called on startup and by tests."""
    global store, registry, orchestrator
    store = store_
    registry = registry_
    orchestrator = ChatOrchestrator(
        store=store_,
        registry=registry_,
        config=config,
        metrics=metrics,
        claude_model=claude_model,
        selector=selector,
    )
    chart_cache.clear()
    return orchestrator


def _store() -> Store:
    if store is None:
        raise ChatError("Service is not initialized")
    return store


def _orchestrator() -> ChatOrchestrator:
    if orchestrator is None:
        raise ChatError("Service is not initialized")
    return orchestrator


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


def _message_from_payload(item: Any) -> Message | None:
    if not isinstance(item, dict) or item.get("role") not in ("user", "assistant"):
        return None
    processing = item.get("processing_time_ms", item.get("processingTimeMs"))
    return Message(
        id=str(item.get("id") or ""),
        role=item["role"],
        parts=parse_parts(item.get("parts") if item.get("parts") is not None else item.get("content")),
        createdAt=item.get("createdAt") or item.get("created_at") or None,
        processing_time_ms=int(processing) if isinstance(processing, (int, float)) else None,
    )


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    _ = request
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


@app.on_event("startup")
async def startup() -> None:
    global claude_model
    setup_logging(settings.logging.level)
    if settings.anthropic.api_key:
        claude_model = select_claude_model(
            settings.anthropic.api_key,
            [settings.anthropic.primary_model, settings.anthropic.fallback_model],
        )
        logger.info("Claude model selected: %s", claude_model)
    configure(store_=build_store(), registry_=build_registry(settings))


@app.on_event("shutdown")
async def shutdown() -> None:
    if settings.store_backend == "postgres":
        from finchat import db

        db.close_pool()


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/metrics")
def api_metrics(auth: AuthContext = Depends(require_auth)):
    _ = auth
    return metrics.stats()


@app.get("/models")
async def models(request: Request, auth: AuthContext = Depends(require_auth)):
    _ = auth
    selection = await select_engine(settings, ProviderPreferences.from_headers(request.headers), claude_model=claude_model)
    return {
        **selection.describe(),
        "claudeModel": claude_model,
        "appMode": settings.app_mode,
        "tools": registry.names() if registry else [],
    }


@app.post("/api/chat")
async def chat(request: Request, payload: dict[str, Any], auth: AuthContext = Depends(require_auth)):
    raw = payload.get("messages")
    if not isinstance(raw, list) or not raw:
        return JSONResponse({"error": "messages required"}, status_code=400)
    messages = [m for m in (_message_from_payload(item) for item in raw) if m is not None]
    turn = TurnRequest(
        session_id=str(payload.get("sessionId") or "") or None,
        messages=messages,
        access_token=payload.get("accessToken") or request.headers.get("x-access-token"),
        prefs=ProviderPreferences.from_headers(request.headers),
    )
    handle = await _orchestrator().start_turn(turn, auth)

    async def event_gen():
        async for event in handle.events():
            yield _sse(event.type, event.data)

    return StreamingResponse(
        event_gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Provider": handle.selection.provider,
            "X-Model": handle.selection.model,
        },
    )


@app.post("/api/chat/generate-title")
async def generate_title(request: Request, payload: dict[str, Any], auth: AuthContext = Depends(require_auth)):
    message = str(payload.get("message") or "").strip()
    if not message:
        return JSONResponse({"error": "message required"}, status_code=400)
    title = await _orchestrator().generate_title(message, ProviderPreferences.from_headers(request.headers))
    session_id = str(payload.get("sessionId") or "")
    if session_id:
        await asyncio.to_thread(_store().rename_session, session_id, auth.user_id, title)
    return {"title": title}


@app.get("/api/chat/sessions")
def list_sessions(auth: AuthContext = Depends(require_auth)):
    sessions = _store().list_sessions(auth.user_id)
    return {"sessions": [s.model_dump(mode="json") for s in sessions]}


@app.post("/api/chat/sessions")
def create_session(payload: dict[str, Any] | None = None, auth: AuthContext = Depends(require_auth)):
    title = str((payload or {}).get("title") or "").strip() or "New Chat"
    session = _store().create_session(auth.user_id, title)
    return {"session": session.model_dump(mode="json")}


@app.get("/api/chat/sessions/{session_id}")
def get_session(session_id: str, auth: AuthContext = Depends(require_auth)):
    session = _store().get_session(session_id, auth.user_id)
    if session is None:
        return JSONResponse({"error": "Session not found"}, status_code=404)
    messages = _store().get_messages(session_id)
    return {"session": session.model_dump(mode="json"), "messages": [m.to_api() for m in messages]}


@app.patch("/api/chat/sessions/{session_id}")
def rename_session(session_id: str, payload: dict[str, Any], auth: AuthContext = Depends(require_auth)):
    title = str(payload.get("title") or "").strip()
    if not title:
        return JSONResponse({"error": "title required"}, status_code=400)
    session = _store().rename_session(session_id, auth.user_id, title)
    if session is None:
        return JSONResponse({"error": "Session not found"}, status_code=404)
    return {"session": session.model_dump(mode="json")}


@app.delete("/api/chat/sessions/{session_id}")
def delete_session(session_id: str, auth: AuthContext = Depends(require_auth)):
    if not _store().delete_session(session_id, auth.user_id):
        return JSONResponse({"error": "Session not found"}, status_code=404)
    return {"success": True}


@app.get("/api/charts/{chart_id}")
def get_chart(chart_id: str):
    chart = _store().get_chart(chart_id)
    if chart is None:
        return JSONResponse({"error": "Chart not found"}, status_code=404)
    return chart.to_api()


@app.get("/api/charts/{chart_id}/render")
def render_chart(chart_id: str):
    chart = _store().get_chart(chart_id)
    if chart is None:
        return JSONResponse({"error": "Chart not found"}, status_code=404)
    return HTMLResponse(render_chart_page(chart))


@app.get("/api/charts/{chart_id}/image")
def chart_image(chart_id: str):
    png = chart_png(chart_id, _store(), rasterizer, chart_cache)
    if png is None:
        return JSONResponse({"error": "Chart not found"}, status_code=404)
    return Response(png, media_type="image/png", headers={"Cache-Control": "public, max-age=31536000, immutable"})


@app.get("/api/csvs/{csv_id}")
def get_csv(csv_id: str):
    table = _store().get_csv(csv_id)
    if table is None:
        return JSONResponse({"error": "CSV not found"}, status_code=404)
    return table.to_api()


@app.post("/api/reports/generate-pdf")
async def generate_pdf(payload: dict[str, Any], auth: AuthContext = Depends(require_auth)):
    session_id = str(payload.get("sessionId") or "")
    if not session_id:
        return JSONResponse({"error": "Session ID is required"}, status_code=400)
    try:
        filename, pdf = await render_report(
            _store(),
            session_id,
            auth.user_id,
            rasterizer=rasterizer,
            cache=chart_cache,
            timeout_ms=settings.report.timeout_ms,
        )
    except ChatError:
        metrics.report_failures += 1
        raise
    except Exception as exc:
        metrics.report_failures += 1
        logger.exception("PDF generation failed session_id=%s", session_id)
        return JSONResponse({"error": "Failed to generate PDF", "details": str(exc)}, status_code=500)
    metrics.reports_rendered += 1
    return Response(
        pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
