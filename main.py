from __future__ import annotations

import base64
import codecs
import logging
import secrets

from docker.errors import DockerException
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from starlette.concurrency import run_in_threadpool

from stackd import db
from stackd.api_models import ActionResponse, ContainerInfo, SaveStackRequest, StackResponse, StatusResponse
from stackd.docker_ops import DockerRuntime
from stackd.errors import EnvStoreError, ProjectLoadError, StackNotFound
from stackd.loader import load_project, parse_env_file, project_for_stack
from stackd.reconciler import StackReconciler
from stackd.settings import settings
from stackd.streams import ChannelClosed, open_shell, session_target, stream_logs

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="stackd")
security = HTTPBasic(auto_error=False)

_runtime = DockerRuntime()


def get_runtime() -> DockerRuntime:
    return _runtime


def get_reconciler(runtime: DockerRuntime = Depends(get_runtime)) -> StackReconciler:
    return StackReconciler(runtime)


# --- auth ---


def _credentials_ok(username: str, password: str) -> bool:
    return secrets.compare_digest(username, settings.admin_user) and secrets.compare_digest(
        password, settings.admin_password or ""
    )


def require_user(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    if settings.admin_password is None:
        return "anonymous"
    if credentials is None or not _credentials_ok(credentials.username, credentials.password):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def _ws_authorized(websocket: WebSocket) -> bool:
    if settings.admin_password is None:
        return True
    header = websocket.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "basic":
        return False
    try:
        username, _, password = base64.b64decode(token).decode().partition(":")
    except ValueError:
        return False
    return _credentials_ok(username, password)


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    db.log_event("INFO", f"stackd started (db: {settings.db_path})")
    if not settings.env_password:
        db.log_event("WARN", "STACKD_ENV_PASSWORD is not set; stacks with env text cannot be saved or loaded")


def _stack_or_404(name: str) -> db.StackRow:
    try:
        row = db.get_stack(name)
    except EnvStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if row is None:
        raise HTTPException(status_code=404, detail=f"Unknown stack '{name}'")
    return row


# --- stacks ---


@app.get("/healthz")
def healthz(runtime: DockerRuntime = Depends(get_runtime)) -> dict:
    return {"status": "ok", "docker": runtime.available()}


@app.get("/api/stacks", response_model=list[str])
def list_stacks(_: str = Depends(require_user)) -> list[str]:
    return db.list_stacks()


@app.get("/api/stacks/{name}", response_model=StackResponse)
def get_stack(name: str, _: str = Depends(require_user)) -> StackResponse:
    row = _stack_or_404(name)
    return StackResponse(name=row.name, yaml=row.yaml, env=row.env)


@app.put("/api/stacks/{name}", response_model=StackResponse)
def save_stack(name: str, req: SaveStackRequest, user: str = Depends(require_user)) -> StackResponse:
    try:
        db.validate_stack_name(name)
        load_project(name, req.yaml, parse_env_file(req.env))
    except (ValueError, ProjectLoadError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        row = db.save_stack(name, req.yaml, req.env)
    except EnvStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    db.log_event("INFO", f"Stack saved by {user}", stack=name)
    return StackResponse(name=row.name, yaml=row.yaml, env=row.env)


@app.delete("/api/stacks/{name}")
def delete_stack(name: str, user: str = Depends(require_user)) -> dict:
    if not db.delete_stack(name):
        raise HTTPException(status_code=404, detail=f"Unknown stack '{name}'")
    db.log_event("INFO", f"Stack deleted by {user}", stack=name)
    return {"ok": True}


@app.get("/api/stacks/{name}/status", response_model=StatusResponse)
def stack_status(
    name: str, reconciler: StackReconciler = Depends(get_reconciler), _: str = Depends(require_user)
) -> StatusResponse:
    try:
        return StatusResponse(name=name, status=reconciler.status(name))
    except DockerException as e:
        raise HTTPException(status_code=503, detail=f"Docker unavailable: {e}")


@app.get("/api/stacks/{name}/containers", response_model=list[ContainerInfo])
def stack_containers(
    name: str, reconciler: StackReconciler = Depends(get_reconciler), _: str = Depends(require_user)
) -> list[ContainerInfo]:
    try:
        containers = reconciler.list_containers(name)
    except DockerException as e:
        raise HTTPException(status_code=503, detail=f"Docker unavailable: {e}")
    return [
        ContainerInfo(id=c.id, name=c.name, service=c.labels.get(settings.service_label), state=c.state)
        for c in containers
    ]


@app.post("/api/stacks/{name}/actions/{action}", response_model=ActionResponse)
def stack_action(
    name: str,
    action: str,
    reconciler: StackReconciler = Depends(get_reconciler),
    user: str = Depends(require_user),
) -> ActionResponse:
    db.log_event("INFO", f"Action '{action}' requested by {user}", stack=name)
    if action == "stop":
        removed = reconciler.stop(name)
        return ActionResponse(name=name, action=action, removed=removed)
    if action not in {"start", "update"}:
        raise HTTPException(status_code=400, detail="action must be start, update or stop")

    try:
        project = project_for_stack(name)
    except StackNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProjectLoadError as e:
        db.log_event("ERROR", f"Could not load stack: {e}", stack=name)
        raise HTTPException(status_code=400, detail=str(e))

    report = reconciler.start(name, project, is_update=action == "update")
    return ActionResponse(name=name, action=action, started=report.started, skipped=report.skipped)


@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000), stack: str | None = None, _: str = Depends(require_user)) -> list:
    return db.latest_events(limit=limit, stack=stack)


# --- live sessions ---


def _sender(websocket: WebSocket):
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def send(data: bytes) -> None:
        try:
            await websocket.send_text(decoder.decode(data))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise ChannelClosed() from e

    return send


def _receiver(websocket: WebSocket):
    async def receive() -> bytes:
        try:
            message = await websocket.receive()
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ChannelClosed() from e
        if message["type"] == "websocket.disconnect":
            raise ChannelClosed()
        if message.get("bytes") is not None:
            return message["bytes"]
        return (message.get("text") or "").encode()

    return receive


async def _open_session(websocket: WebSocket, runtime: DockerRuntime, kind: str, name: str, container: str | None):
    if not _ws_authorized(websocket):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    await websocket.accept()
    db.log_event("INFO", f"{kind} session requested for container '{container or '-'}'", stack=name)
    try:
        target = await run_in_threadpool(session_target, runtime, name, container)
    except DockerException as e:
        db.log_event("ERROR", f"Could not list containers: {e}", stack=name)
        target = None
    if target is None:
        db.log_event("WARN", "No containers found", stack=name)
        await websocket.close()
    return target


@app.websocket("/ws/logs")
async def ws_logs(
    websocket: WebSocket,
    name: str,
    container: str | None = None,
    runtime: DockerRuntime = Depends(get_runtime),
) -> None:
    target = await _open_session(websocket, runtime, "Logs", name, container)
    if target is None:
        return
    db.log_event("INFO", f"Streaming logs for '{target.name}' (ID: {target.short_id})", stack=name)
    try:
        frames = await stream_logs(runtime, target, _sender(websocket), receive=_receiver(websocket))
        db.log_event("INFO", f"Log stream for '{target.name}' ended after {frames} message(s)", stack=name)
    except DockerException as e:
        db.log_event("ERROR", f"Error getting logs for '{target.name}': {e}", stack=name)
    await _close_quietly(websocket)


@app.websocket("/ws/shell")
async def ws_shell(
    websocket: WebSocket,
    name: str,
    container: str | None = None,
    runtime: DockerRuntime = Depends(get_runtime),
) -> None:
    target = await _open_session(websocket, runtime, "Shell", name, container)
    if target is None:
        return
    db.log_event("INFO", f"Opening shell in '{target.name}' (ID: {target.short_id})", stack=name)
    try:
        await open_shell(runtime, target, _receiver(websocket), _sender(websocket))
        db.log_event("INFO", f"Shell session in '{target.name}' ended", stack=name)
    except DockerException as e:
        db.log_event("ERROR", f"Error opening shell in '{target.name}': {e}", stack=name)
    await _close_quietly(websocket)


async def _close_quietly(websocket: WebSocket) -> None:
    try:
        await websocket.close()
    except RuntimeError:
        pass  # already closed by the client
