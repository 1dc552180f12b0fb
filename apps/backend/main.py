from __future__ import annotations

import json
import os
import threading
from contextlib import aclosing, asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from errors import InvalidRequest, ToolError
from streaming import (
    ChatMessage,
    DoneEvent,
    ErrorEvent,
    StreamingProxy,
    format_sse,
    validate_messages,
)
from tools import TOOL_NAMES, ToolLimits, invoke
from workspace import (
    DEFAULT_IGNORE_DIRS,
    DEFAULT_MAX_GREP_MATCHES,
    DEFAULT_MAX_READ_BYTES,
    Workspace,
)

APP_VERSION = "0.1.0"
WORKSPACE_ROOT = Path(os.environ.get("LOCALPILOT_WORKSPACE_ROOT") or Path.cwd()).resolve()
BACKEND_BASE_URL = os.environ.get("LOCALPILOT_BASE_URL", "http://127.0.0.1:1234/v1")
BACKEND_API_KEY = os.environ.get("LOCALPILOT_API_KEY", "lm-studio")
DEFAULT_MODEL = os.environ.get("LOCALPILOT_MODEL", "gpt-4o-mini")
DATA_DIR = Path(os.environ.get("LOCALPILOT_DATA_DIR", str(Path.cwd() / ".localpilot-data")))

SUMMARY_ROOT_FILES = 30
SUMMARY_ROOT_DIRS = 15
SUMMARY_SAMPLE_FILES = 60
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


class AppConfig(BaseModel):
    ignore_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_IGNORE_DIRS))
    max_read_bytes: int = Field(default=DEFAULT_MAX_READ_BYTES, ge=1)
    max_grep_matches: int = Field(default=DEFAULT_MAX_GREP_MATCHES, ge=1)
    default_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    frequency_penalty: float | None = 0.5
    presence_penalty: float | None = 0.2
    inject_system_prompt: bool = True


class ToolCallRequest(BaseModel):
    name: Any = None
    args: Any = None


class ChatStreamRequest(BaseModel):
    messages: Any = None
    model: str | None = None
    temperature: float | None = None


class LogsTailResponse(BaseModel):
    lines: list[str]


class LogsSearchResponse(BaseModel):
    matches: list[str]


config_lock = threading.Lock()
current_config = AppConfig()
backend_client: Any = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    reload_config()
    backend_log_path().parent.mkdir(parents=True, exist_ok=True)
    append_backend_log(
        "info", f"started workspace={WORKSPACE_ROOT} backend={BACKEND_BASE_URL}"
    )
    yield


app = FastAPI(title="LocalPilot Backend", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def config_path() -> Path:
    return DATA_DIR / "config.json"


def backend_log_path() -> Path:
    return DATA_DIR / "logs" / "backend.log"


def write_default_config_if_missing() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    path = config_path()
    if path.exists():
        return
    default = AppConfig().model_dump()
    temp_path = path.with_suffix(".tmp")
    temp_path.write_text(json.dumps(default, indent=2), encoding="utf-8")
    temp_path.replace(path)


def append_backend_log(level: str, message: str) -> None:
    path = backend_log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    line = f"{iso(now_utc())} [{level.upper()}] {message}\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)


def load_config_from_disk() -> AppConfig:
    write_default_config_if_missing()
    path = config_path()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=500, detail=f"Invalid config JSON: {exc}"
        ) from exc
    return AppConfig(**raw)


def get_config_snapshot() -> AppConfig:
    with config_lock:
        return current_config.model_copy(deep=True)


def reload_config() -> AppConfig:
    config = load_config_from_disk()
    with config_lock:
        global current_config
        current_config = config
    return config


def get_workspace() -> Workspace:
    return Workspace(WORKSPACE_ROOT, get_config_snapshot().ignore_dirs)


def get_backend_client() -> Any:
    global backend_client
    if backend_client is None:
        backend_client = AsyncOpenAI(base_url=BACKEND_BASE_URL, api_key=BACKEND_API_KEY)
    return backend_client


def workspace_summary(workspace: Workspace) -> str:
    try:
        top = workspace.list_dir()
    except ToolError as exc:
        return f"Workspace: {workspace.root} (unavailable: {exc})"
    root_files = [entry.name for entry in top if entry.kind == "file"][:SUMMARY_ROOT_FILES]
    root_dirs = [entry.name for entry in top if entry.kind == "directory"][:SUMMARY_ROOT_DIRS]
    sample: list[str] = []
    for path in workspace.iter_files(workspace.root):
        if len(sample) >= SUMMARY_SAMPLE_FILES:
            break
        sample.append(workspace.relative(path))

    lines = [
        f"Workspace: {workspace.root}",
        f"Root files ({len(root_files)}): {', '.join(root_files)}",
        f"Root dirs ({len(root_dirs)}): {', '.join(root_dirs)}",
    ]
    if sample:
        lines.append(f"Files (first {len(sample)}):")
        lines.extend(f" - {item}" for item in sample)
    return "\n".join(lines)


def build_system_prompt(workspace: Workspace) -> str:
    return "\n".join(
        [
            "You are a local software engineering assistant working on the code in this workspace.",
            "Focus on pair programming, code review, architecture, performance and security.",
            "Answer concisely and clearly. Do not repeat yourself; if your output looks repeated or garbled, rewrite it cleanly.",
            "Refer to files by their workspace-relative path and propose minimal diffs or patches when changing them.",
            "Stay inside the workspace; if you need a file you have not seen, ask for it by path.",
            "",
            "Workspace summary (context only, do not repeat unless useful):",
            workspace_summary(workspace),
        ]
    )


def with_system_prompt(messages: list[ChatMessage], workspace: Workspace) -> list[ChatMessage]:
    if messages[0].role == "system":
        return messages
    return [ChatMessage(role="system", content=build_system_prompt(workspace)), *messages]


@app.get("/v1/health")
def get_health() -> dict[str, Any]:
    return {
        "status": "ok",
        "time": iso(now_utc()),
        "workspace": str(WORKSPACE_ROOT),
        "base_url": BACKEND_BASE_URL,
        "default_model": DEFAULT_MODEL,
        "tools": list(TOOL_NAMES),
    }


@app.get("/v1/version")
def get_version() -> dict[str, str]:
    return {"version": APP_VERSION}


@app.get("/v1/config", response_model=AppConfig)
def get_config() -> AppConfig:
    return get_config_snapshot()


@app.post("/v1/config/reload", response_model=AppConfig)
def post_config_reload() -> AppConfig:
    config = reload_config()
    append_backend_log("info", "config reloaded")
    return config


@app.get("/v1/models")
async def get_models() -> dict[str, Any]:
    try:
        page = await get_backend_client().models.list()
    except Exception as exc:
        append_backend_log("error", f"model listing failed: {exc}")
        raise HTTPException(
            status_code=502, detail=f"Backend unavailable: {exc}"
        ) from exc
    return {"ok": True, "models": [model.id for model in page.data]}


@app.get("/v1/context/summary")
def get_context_summary() -> dict[str, Any]:
    return {"ok": True, "summary": workspace_summary(get_workspace())}


@app.post("/v1/tools")
def post_tools(request: ToolCallRequest) -> dict[str, Any]:
    config = get_config_snapshot()
    limits = ToolLimits(
        max_read_bytes=config.max_read_bytes,
        max_grep_matches=config.max_grep_matches,
    )
    envelope = invoke(get_workspace(), request.name, request.args, limits)
    if envelope["ok"]:
        result = envelope["result"]
        if isinstance(result, dict) and result.get("status") == "applied":
            append_backend_log(
                "info",
                f"tool {request.name} wrote {request.args.get('path')} bytes={result['bytes_written']}",
            )
        else:
            append_backend_log("info", f"tool {request.name} ok")
    else:
        level = "error" if envelope["code"] == "internal" else "warn"
        append_backend_log(level, f"tool {request.name} failed: {envelope['error']}")
    return envelope


async def relay_chat(
    proxy: StreamingProxy,
    messages: list[ChatMessage],
    model: str,
    temperature: float,
) -> AsyncIterator[str]:
    append_backend_log("info", f"chat stream started model={model} messages={len(messages)}")
    async with aclosing(
        proxy.stream(messages, model=model, temperature=temperature)
    ) as events:
        async for event in events:
            if isinstance(event, ErrorEvent):
                append_backend_log("error", f"chat stream failed: {event.message}")
            elif isinstance(event, DoneEvent):
                append_backend_log(
                    "info", f"chat stream done chars={len(event.full_text)}"
                )
            yield format_sse(event)


@app.post("/v1/chat/stream")
def post_chat_stream(request: ChatStreamRequest) -> StreamingResponse:
    try:
        messages = validate_messages(request.messages)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    config = get_config_snapshot()
    if config.inject_system_prompt:
        messages = with_system_prompt(messages, get_workspace())
    proxy = StreamingProxy(
        get_backend_client(),
        frequency_penalty=config.frequency_penalty,
        presence_penalty=config.presence_penalty,
        log=append_backend_log,
    )
    temperature = (
        request.temperature
        if request.temperature is not None
        else config.default_temperature
    )
    return StreamingResponse(
        relay_chat(proxy, messages, request.model or DEFAULT_MODEL, temperature),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/v1/logs/tail", response_model=LogsTailResponse)
def get_logs_tail(lines: int = 200) -> LogsTailResponse:
    path = backend_log_path()
    if not path.exists():
        return LogsTailResponse(lines=[])
    content = path.read_text(encoding="utf-8", errors="ignore").splitlines()
    take = max(1, min(lines, 2000))
    return LogsTailResponse(lines=content[-take:])


@app.get("/v1/logs/search", response_model=LogsSearchResponse)
def get_logs_search(q: str, limit: int = 200) -> LogsSearchResponse:
    needle = q.lower().strip()
    if not needle:
        return LogsSearchResponse(matches=[])
    path = backend_log_path()
    if not path.exists():
        return LogsSearchResponse(matches=[])
    matches: list[str] = []
    for line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        if needle in line.lower():
            matches.append(line)
            if len(matches) >= max(1, min(limit, 5000)):
                break
    return LogsSearchResponse(matches=matches)


if __name__ == "__main__":
    import uvicorn

    reload_config()
    port = int(os.environ.get("LOCALPILOT_PORT", "3000"))
    uvicorn.run("main:app", host="127.0.0.1", port=port, reload=False)
