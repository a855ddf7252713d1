"""
FastAPI application — REST + WebSocket API for Agent Builder.

Endpoints:
  GET    /health                                    — Health check
  POST   /projects                                  — Create a project (seeds its tasks)
  GET    /projects                                  — List the caller's projects
  GET    /projects/{id}                             — Project with its tasks
  PATCH  /projects/{id}                             — Rename / edit prompt / change status
  DELETE /projects/{id}                             — Delete a project that is not running
  GET    /projects/{id}/tasks                       — Pipeline tasks in order
  GET    /projects/{id}/status                      — Progress summary
  POST   /projects/{id}/start                       — Dispatch the next runnable task
  POST   /projects/{id}/resume                      — Approve the task awaiting sign-off
  POST   /projects/{id}/reject                      — Send that task back for changes
  POST   /projects/{id}/restart                     — Reset a failed project
  PATCH  /projects/{id}/tasks/{taskId}              — Worker progress / status report
  GET    /projects/{id}/artifacts                   — Produced artifacts
  GET|PATCH|DELETE /projects/{id}/artifacts/{aid}   — One artifact
  POST   /connections/{connectionId}                — Relay an event to a live socket
  WS     /ws                                        — Observer connection (subscribe/unsubscribe)

The caller is identified by the ``X-User-Id`` header.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Body, Depends, FastAPI, Header, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect
from temporalio.client import Client

import config
from features.dispatch.queue import TemporalDispatchQueue
from features.notifications.transport import ConnectionGone, WebSocketTransport
from features.notifications.registry import ConnectionRegistry
from features.projects.errors import Forbidden, InfrastructureError, OrchestrationError
from models.schemas import (
    ArtifactUpdateRequest,
    CreateProjectRequest,
    RejectRequest,
    ResumeRequest,
    SubscriptionMessage,
    TaskUpdateRequest,
    UpdateProjectRequest,
)
from services import Services, memory_services, postgres_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


async def _connect_services() -> Services:
    transport = WebSocketTransport()
    queue = None
    try:
        client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
        queue = TemporalDispatchQueue(client)
        log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
    except Exception as e:
        log.warning("Could not connect to Temporal: %s (agents will run in-process)", e)

    try:
        services = postgres_services(transport, queue=queue)
        log.info("Postgres database initialized")
    except Exception as e:
        # in-memory state is invisible to a Temporal worker; dispatch stays local
        log.warning("Could not connect to Postgres: %s (state will be in-memory only)", e)
        services = memory_services(transport)
    log.info("Services ready — store: %s, dispatch: %s", services.backend, services.dispatch_mode)
    return services


async def _purge_connections(registry: ConnectionRegistry) -> None:
    try:
        removed = await registry.purge_expired()
    except InfrastructureError as e:
        log.warning("[NOTIFY] Connection purge failed: %s", e)
        return
    if removed:
        log.info("[NOTIFY] Purged %d expired connections", removed)


async def _sweep_connections(registry: ConnectionRegistry, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        await _purge_connections(registry)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise Forbidden("Missing X-User-Id header")
    return x_user_id


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = await _connect_services()
        registry = app.state.services.registry
        await _purge_connections(registry)
        sweeper = asyncio.create_task(
            _sweep_connections(registry, config.CONNECTION_SWEEP_INTERVAL_SEC)
        )
        try:
            yield
        finally:
            sweeper.cancel()

    app = FastAPI(
        title="Agent Builder",
        description="Multi-agent project pipeline with approval gates and live notifications",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # ── Errors ────────────────────────────────────────────────────────

    @app.exception_handler(OrchestrationError)
    async def orchestration_error(request: Request, exc: OrchestrationError):
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid request')}" if field else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"error": {"reason": "validation_error", "message": message}},
        )

    # ── Health ────────────────────────────────────────────────────────

    @app.get("/health")
    def health(svc: Services = Depends(get_services)):
        return {
            "status": "ok",
            "service": "agent-builder",
            "store": svc.backend,
            "dispatch": svc.dispatch_mode,
        }

    # ── Projects ──────────────────────────────────────────────────────

    @app.post("/projects", status_code=201)
    async def create_project(req: CreateProjectRequest, user_id: str = Depends(get_user_id),
                             svc: Services = Depends(get_services)):
        project = await svc.orchestrator.create_project(user_id, req.project_name, req.request_prompt)
        tasks = await svc.orchestrator.list_tasks(project.project_id)
        return {"project": project.to_dict(), "tasks": [t.to_dict() for t in tasks]}

    @app.get("/projects")
    async def list_projects(user_id: str = Depends(get_user_id),
                            svc: Services = Depends(get_services)):
        projects = await svc.orchestrator.list_projects(user_id)
        return {"projects": [p.to_dict() for p in projects], "count": len(projects)}

    @app.get("/projects/{project_id}")
    async def get_project(project_id: str, user_id: str = Depends(get_user_id),
                          svc: Services = Depends(get_services)):
        project = await svc.orchestrator.get_project(project_id, user_id)
        tasks = await svc.orchestrator.list_tasks(project_id)
        return {"project": project.to_dict(), "tasks": [t.to_dict() for t in tasks]}

    @app.patch("/projects/{project_id}")
    async def update_project(project_id: str, req: UpdateProjectRequest,
                             user_id: str = Depends(get_user_id),
                             svc: Services = Depends(get_services)):
        project = await svc.orchestrator.update_project(
            project_id, user_id,
            project_name=req.project_name,
            request_prompt=req.request_prompt,
            status=req.status,
        )
        return {"project": project.to_dict()}

    @app.delete("/projects/{project_id}")
    async def delete_project(project_id: str, user_id: str = Depends(get_user_id),
                             svc: Services = Depends(get_services)):
        await svc.orchestrator.delete_project(project_id, user_id)
        return {"projectId": project_id, "deleted": True}

    @app.get("/projects/{project_id}/tasks")
    async def list_tasks(project_id: str, user_id: str = Depends(get_user_id),
                         svc: Services = Depends(get_services)):
        tasks = await svc.orchestrator.list_tasks(project_id, user_id)
        return {"projectId": project_id, "tasks": [t.to_dict() for t in tasks]}

    @app.get("/projects/{project_id}/status")
    async def project_status(project_id: str, user_id: str = Depends(get_user_id),
                             svc: Services = Depends(get_services)):
        return await svc.orchestrator.project_status(project_id, user_id)

    # ── Pipeline control ──────────────────────────────────────────────

    @app.post("/projects/{project_id}/start")
    async def start_project(project_id: str, user_id: str = Depends(get_user_id),
                            svc: Services = Depends(get_services)):
        result = await svc.orchestrator.start(project_id, user_id)
        return result.to_dict()

    @app.post("/projects/{project_id}/resume")
    async def resume_project(project_id: str, req: ResumeRequest | None = Body(default=None),
                             user_id: str = Depends(get_user_id),
                             svc: Services = Depends(get_services)):
        req = req or ResumeRequest()
        result = await svc.orchestrator.resume(
            project_id, user_id, req.task_id, req.feedback, approve=req.approve,
        )
        return result.to_dict()

    @app.post("/projects/{project_id}/reject")
    async def reject_task(project_id: str, req: RejectRequest | None = Body(default=None),
                          user_id: str = Depends(get_user_id),
                          svc: Services = Depends(get_services)):
        req = req or RejectRequest()
        result = await svc.orchestrator.reject(project_id, user_id, req.task_id, req.reason)
        return result.to_dict()

    @app.post("/projects/{project_id}/restart")
    async def restart_project(project_id: str, user_id: str = Depends(get_user_id),
                              svc: Services = Depends(get_services)):
        project = await svc.orchestrator.restart(project_id, user_id)
        return {"project": project.to_dict()}

    @app.patch("/projects/{project_id}/tasks/{task_id}")
    async def update_task(project_id: str, task_id: str, req: TaskUpdateRequest,
                          svc: Services = Depends(get_services)):
        task = await svc.orchestrator.update_task(
            project_id, task_id,
            status=req.status,
            progress=req.progress,
            error_message=req.error_message,
            output_artifact_id=req.output_artifact_id,
        )
        return {"task": task.to_dict()}

    # ── Artifacts ─────────────────────────────────────────────────────

    @app.get("/projects/{project_id}/artifacts")
    async def list_artifacts(project_id: str, user_id: str = Depends(get_user_id),
                             svc: Services = Depends(get_services)):
        await svc.orchestrator.get_project(project_id, user_id)
        artifacts = await svc.artifacts.list(project_id)
        return {"projectId": project_id, "artifacts": [a.to_dict() for a in artifacts]}

    @app.get("/projects/{project_id}/artifacts/{artifact_id}")
    async def get_artifact(project_id: str, artifact_id: str,
                           user_id: str = Depends(get_user_id),
                           svc: Services = Depends(get_services)):
        await svc.orchestrator.get_project(project_id, user_id)
        artifact = await svc.artifacts.get(project_id, artifact_id)
        return {"artifact": artifact.to_dict()}

    @app.patch("/projects/{project_id}/artifacts/{artifact_id}")
    async def update_artifact(project_id: str, artifact_id: str, req: ArtifactUpdateRequest,
                              user_id: str = Depends(get_user_id),
                              svc: Services = Depends(get_services)):
        await svc.orchestrator.get_project(project_id, user_id)
        artifact = await svc.artifacts.update(project_id, artifact_id, req.changes())
        return {"artifact": artifact.to_dict()}

    @app.delete("/projects/{project_id}/artifacts/{artifact_id}")
    async def delete_artifact(project_id: str, artifact_id: str,
                              user_id: str = Depends(get_user_id),
                              svc: Services = Depends(get_services)):
        await svc.orchestrator.get_project(project_id, user_id)
        await svc.artifacts.delete(project_id, artifact_id)
        return {"artifactId": artifact_id, "deleted": True}

    # ── Connections ───────────────────────────────────────────────────

    @app.post("/connections/{connection_id}")
    async def relay_to_connection(connection_id: str, request: Request,
                                  svc: Services = Depends(get_services)):
        payload = (await request.body()).decode("utf-8")
        try:
            await svc.transport.deliver(connection_id, payload)
        except ConnectionGone:
            return JSONResponse(
                status_code=410,
                content={"error": {"reason": "gone", "message": f"Connection gone: {connection_id}"}},
            )
        return Response(status_code=204)

    @app.websocket("/ws")
    async def observer_socket(websocket: WebSocket):
        svc: Services = websocket.app.state.services
        user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("userId")
        connection_id = uuid.uuid4().hex
        await websocket.accept()
        svc.transport.attach(connection_id, websocket)
        await svc.registry.register(connection_id, None, user_id)
        log.info("[NOTIFY] Connected: %s (user %s)", connection_id, user_id)
        await websocket.send_json({"type": "connected", "connectionId": connection_id})
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    raw = json.loads(text)
                except json.JSONDecodeError as e:
                    await websocket.send_json({
                        "type": "error",
                        "error": {"reason": "validation_error", "message": f"Malformed JSON: {e.msg}"},
                    })
                    continue
                await _handle_subscription(svc, websocket, connection_id, user_id, raw)
        except WebSocketDisconnect:
            log.info("[NOTIFY] Disconnected: %s", connection_id)
        finally:
            svc.transport.detach(connection_id)
            await svc.registry.remove(connection_id)

    return app


async def _handle_subscription(svc: Services, websocket: WebSocket, connection_id: str,
                               user_id: str | None, raw) -> None:
    try:
        msg = SubscriptionMessage.model_validate(raw)
    except ValidationError as e:
        await websocket.send_json({
            "type": "error",
            "error": {"reason": "validation_error", "message": str(e.errors()[0]["msg"])},
        })
        return

    if msg.action == "unsubscribe":
        await svc.registry.register(connection_id, None, user_id)
        await websocket.send_json({"type": "unsubscribed", "connectionId": connection_id})
        return

    if not msg.project_id:
        await websocket.send_json({
            "type": "error",
            "error": {"reason": "validation_error", "message": "projectId is required to subscribe"},
        })
        return
    try:
        if not user_id:
            raise Forbidden("Missing X-User-Id header")
        await svc.orchestrator.get_project(msg.project_id, user_id)
    except OrchestrationError as e:
        await websocket.send_json({"type": "error", "error": e.to_dict()})
        return
    await svc.registry.register(connection_id, msg.project_id, user_id)
    log.info("[NOTIFY] %s subscribed to %s", connection_id, msg.project_id)
    await websocket.send_json({
        "type": "subscribed",
        "connectionId": connection_id,
        "projectId": msg.project_id,
    })


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=True)
