from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import os
import posixpath
from typing import Any
from urllib.parse import quote

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.datastructures import UploadFile

from microide.config import IdeConfig, canonical_root, load_config
from microide.execution.gateway import (
    ExecutionGateway,
    InvalidExecutionRequest,
    UnsupportedLanguage,
    canonical_language,
)
from microide.runtimes.auth import require_token
from microide.runtimes.relay import RELAY_EVENTS, BroadcastRelay
from microide.sandbox_files.policy import (
    InvalidPath,
    PathResolver,
    normalize_public_path,
)
from microide.sandbox_files.workspace_fs import WorkspaceFs

logger = logging.getLogger(__name__)

router = APIRouter()

_DISCONNECT_POLL_S = 0.5


class ExecResponse(BaseModel):
    stdout: str
    stderr: str
    exitCode: int | None = None
    timedOut: bool = False


def _decode_output(b: bytes) -> str:
    return b.decode("utf-8", errors="replace")


def _config(request: Request) -> IdeConfig:
    return request.app.state.config


def _fs(request: Request) -> WorkspaceFs:
    return request.app.state.fs


def _gateway(request: Request) -> ExecutionGateway:
    return request.app.state.gateway


def _require_request_token(request: Request) -> None:
    require_token(_config(request).auth_token, request.headers, request.query_params)


def _unauthorized(request: Request) -> JSONResponse:
    client = getattr(request, "client", None)
    logger.warning(
        "HTTP auth rejected (client=%s method=%s path=%s)",
        client,
        request.method,
        request.url.path,
    )
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


def _bad_request(error: str) -> JSONResponse:
    return JSONResponse({"error": error}, status_code=400)


def _invalid_path(exc: InvalidPath, path: str) -> JSONResponse:
    logger.info("Rejected path %r: %s", path, exc)
    return _bad_request("Invalid path")


def _fs_error(exc: OSError, *, op: str, path: str) -> JSONResponse:
    if isinstance(exc, FileNotFoundError):
        code = "not_found"
    elif isinstance(exc, NotADirectoryError):
        code = "not_a_directory"
    elif isinstance(exc, IsADirectoryError):
        code = "is_a_directory"
    elif isinstance(exc, PermissionError):
        code = "permission_denied"
    else:
        code = "io_error"
    # Raw OS text stays in the server log.
    logger.warning("Workspace %s failed for %r: %s", op, path, exc)
    return JSONResponse({"error": code}, status_code=500)


def _content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/api/files")
async def api_files_list(request: Request, path: str = "") -> JSONResponse:
    try:
        _require_request_token(request)
    except PermissionError:
        return _unauthorized(request)

    try:
        entries = await asyncio.to_thread(_fs(request).ls, path)
    except InvalidPath as e:
        return _invalid_path(e, path)
    except OSError as e:
        return _fs_error(e, op="list", path=path)
    return JSONResponse(entries, status_code=200)


@router.post("/api/files/upload")
async def api_files_upload(request: Request, path: str = "") -> JSONResponse:
    try:
        _require_request_token(request)
    except PermissionError:
        return _unauthorized(request)

    # Parse the multipart body only after the token check passed.
    form = await request.form()
    try:
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            return _bad_request("file required")
        try:
            await asyncio.to_thread(
                _fs(request).write, path, upload.filename or "", upload.file
            )
        except InvalidPath as e:
            return _invalid_path(e, path)
        except OSError as e:
            return _fs_error(e, op="upload", path=path)
    finally:
        await form.close()
    return JSONResponse({"success": True}, status_code=200)


@router.get("/api/files/download")
async def api_files_download(request: Request, path: str = ""):
    try:
        _require_request_token(request)
    except PermissionError:
        return _unauthorized(request)

    if not path:
        return _bad_request("path required")
    try:
        chunks = await asyncio.to_thread(_fs(request).iter_bytes, path)
    except InvalidPath as e:
        return _invalid_path(e, path)
    except OSError as e:
        return _fs_error(e, op="download", path=path)

    name = posixpath.basename(normalize_public_path(path)) or "download"
    return StreamingResponse(
        chunks,
        media_type="application/octet-stream",
        headers={"Content-Disposition": _content_disposition(name)},
    )


@router.delete("/api/files")
async def api_files_delete(request: Request, path: str = "") -> JSONResponse:
    try:
        _require_request_token(request)
    except PermissionError:
        return _unauthorized(request)

    if not path:
        return _bad_request("path required")
    try:
        await asyncio.to_thread(_fs(request).rm, path)
    except InvalidPath as e:
        return _invalid_path(e, path)
    except OSError as e:
        return _fs_error(e, op="delete", path=path)
    return JSONResponse({"success": True}, status_code=200)


@router.post("/api/files/mkdir")
async def api_files_mkdir(request: Request, path: str = "") -> JSONResponse:
    try:
        _require_request_token(request)
    except PermissionError:
        return _unauthorized(request)

    if not path:
        return _bad_request("path required")
    try:
        await asyncio.to_thread(_fs(request).mkdir, path)
    except InvalidPath as e:
        return _invalid_path(e, path)
    except OSError as e:
        return _fs_error(e, op="mkdir", path=path)
    return JSONResponse({"success": True}, status_code=200)


async def _await_unless_disconnected(
    request: Request, task: asyncio.Task[Any]
) -> Any:
    """Await ``task``; cancel it and return None if the client goes away."""
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_S)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.warning("Client disconnected during execution; cancelling")
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                return None
    finally:
        if not task.done():
            task.cancel()


@router.post("/api/execute", response_model=ExecResponse)
async def api_execute(request: Request):
    try:
        _require_request_token(request)
    except PermissionError:
        return _unauthorized(request)

    body: Any
    try:
        body = await request.json()
    except Exception:
        body = {}
    if not isinstance(body, dict):
        body = {}

    language = body.get("language")
    code = body.get("code")
    if not isinstance(language, str) or not isinstance(code, str):
        return _bad_request("language and code required")
    if not language or not code:
        return _bad_request("language and code required")
    try:
        canonical_language(language)
    except UnsupportedLanguage:
        return _bad_request("Unsupported language")

    task = asyncio.ensure_future(_gateway(request).execute(language, code))
    try:
        result = await _await_unless_disconnected(request, task)
    except InvalidExecutionRequest as e:
        return _bad_request(str(e))
    if result is None:
        return JSONResponse({"error": "client_disconnected"}, status_code=499)

    return ExecResponse(
        stdout=_decode_output(result.stdout),
        stderr=_decode_output(result.stderr),
        exitCode=result.exit_code,
        timedOut=result.timed_out,
    )


@router.websocket("/ws")
async def websocket_events(ws: WebSocket) -> None:
    config: IdeConfig = ws.app.state.config
    try:
        require_token(config.auth_token, ws.headers, ws.query_params)
    except PermissionError as e:
        logger.warning(
            "WS auth rejected: %s (client=%s path=%s)", e, ws.client, ws.url.path
        )
        # Accept first so the client sees why it was turned away.
        await ws.accept()
        await ws.send_json({"type": "error", "data": {"error": "Unauthorized"}})
        await ws.close(code=1008)
        return

    await ws.accept()
    relay: BroadcastRelay = ws.app.state.relay
    peer = relay.register(ws)
    logger.info("WS peer %s connected (client=%s)", peer.peer_id, ws.client)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                return
            raw = message.get("text")
            if raw is None:
                # Binary frames carry nothing we relay.
                continue

            try:
                msg = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(msg, dict):
                continue

            mtype = msg.get("type")
            if mtype in RELAY_EVENTS:
                relay.publish(peer, mtype, msg.get("data"))
                continue
            if mtype == "ping":
                peer.offer({"type": "pong", "data": {}})
                continue
            # Unknown frame types are ignored.
    finally:
        await relay.unregister(peer)
        logger.info("WS peer %s disconnected", peer.peer_id)


def create_app(config: IdeConfig | None = None) -> FastAPI:
    cfg = config or load_config()
    cfg = dataclasses.replace(cfg, workspace_root=canonical_root(cfg.workspace_root))
    os.makedirs(cfg.workspace_root, exist_ok=True)

    resolver = PathResolver(
        root=cfg.workspace_root,
        on_escape=cfg.path_escape_mode,
        follow_symlinks=cfg.resolve_symlinks,
    )

    app = FastAPI(title="microide", version="0.1.0")
    app.state.config = cfg
    app.state.fs = WorkspaceFs(resolver)
    app.state.gateway = ExecutionGateway.from_config(cfg)
    app.state.relay = BroadcastRelay(queue_size=cfg.relay_queue_size)

    if cfg.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_allow_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(router)

    # Static assets are mounted last so API and WS routes take precedence.
    if cfg.static_dir:
        if os.path.isdir(cfg.static_dir):
            app.mount(
                "/", StaticFiles(directory=cfg.static_dir, html=True), name="static"
            )
        else:
            logger.warning(
                "STATIC_DIR %s is not a directory; not serving it", cfg.static_dir
            )

    logger.info(
        "Workspace root %s (path escape=%s, exec timeout=%gs, isolated=%s)",
        cfg.workspace_root,
        cfg.path_escape_mode,
        cfg.exec_timeout_s,
        cfg.exec_isolated,
    )
    return app


def main() -> None:
    load_dotenv()
    level_name = (os.environ.get("LOG_LEVEL") or "info").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_config()

    import uvicorn

    uvicorn.run(
        create_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level
    )


if __name__ == "__main__":
    main()
