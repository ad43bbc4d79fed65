"""Control-plane Bridge: the loopback HTTP entry point into the task store.

Every route is a thin forward to one :class:`~shepherd.store.TaskStore`
call. The Bridge only parses requests, applies boundary policy (status enum,
operator-only transitions) and shapes responses; errors are translated 1:1
into status codes with a ``{"error": {"kind", "message"}}`` body.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Literal, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import ForbiddenTransitionError, ShepherdError, ValidationError
from .handshake import remove_port_file, write_port_file
from .models import OPERATOR_ONLY_TRANSITIONS
from .store import TaskStore

logger = logging.getLogger("shepherd.bridge")

TaskStatusValue = Literal["todo", "in-progress", "ready-for-signoff", "done", "rework"]
TaskTypeValue = Literal["task", "bug"]

InterviewCallback = Callable[[Dict[str, Any]], None]

STATUS_CODES: Dict[str, int] = {
    "validation": 400,
    "forbidden": 403,
    "not_found": 404,
    "persistence": 503,
    "migration": 500,
    "internal": 500,
}


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------


class StatusUpdateRequest(BaseModel):
    status: TaskStatusValue


class CreateTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    description: Optional[str] = None
    requirement_path: Optional[str] = Field(default=None, alias="requirementPath")
    feature_id: Optional[str] = None
    type: TaskTypeValue = "task"


class CreateRequirementRequest(BaseModel):
    path: str = Field(min_length=1)
    content: str


class InterviewCompleteRequest(BaseModel):
    requirement_path: Optional[str] = None
    task_ids: List[str] = Field(default_factory=list)
    proposal: Optional[Dict[str, Any]] = None


def error_body(kind: str, message: str) -> Dict[str, Any]:
    return {"error": {"kind": kind, "message": message}}


def parse_limit(value: Optional[str]) -> Optional[int]:
    """Query-string ``limit``; blank is no limit, range checks are the store's."""
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"limit must be a non-negative integer, got {value!r}") from None


def create_app(store: TaskStore, on_interview_complete: Optional[InterviewCallback] = None) -> FastAPI:
    """Build the Bridge application bound to ``store``."""
    app = FastAPI(title="Shepherd Bridge", docs_url=None, redoc_url=None, openapi_url=None)

    # --- Error translation ---

    @app.exception_handler(ShepherdError)
    async def handle_shepherd_error(request: Request, exc: ShepherdError) -> JSONResponse:
        status_code = STATUS_CODES.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc}")
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        message = "Invalid request: " + "; ".join(problems)
        logger.info(f"{request.method} {request.url.path} rejected: {message}")
        return JSONResponse(status_code=400, content=error_body("validation", message))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        kind = "not_found" if exc.status_code in (404, 405) else "internal"
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content=error_body(kind, message))

    # --- Routes ---

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/tasks/next")
    def next_task() -> Dict[str, Any]:
        task = store.next_task()
        return {"task": task.to_dict() if task else None}

    @app.get("/tasks")
    def list_tasks(
        status: Optional[str] = None,
        limit: Optional[str] = None,
        feature_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        # Blank query values (``?status=&limit=``) mean the filter is absent
        status = status.strip() if status and status.strip() else None
        feature_id = feature_id if feature_id and feature_id.strip() else None
        tasks = store.list_tasks(status=status, limit=parse_limit(limit), feature_id=feature_id)
        return {"tasks": [task.to_dict() for task in tasks]}

    @app.post("/tasks")
    def create_task(body: CreateTaskRequest) -> Dict[str, Any]:
        task = store.create_task(
            body.title,
            description=body.description,
            feature_id=body.feature_id,
            requirement_path=body.requirement_path,
            task_type=body.type,
        )
        return task.to_dict()

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str) -> Dict[str, Any]:
        return store.get_task(task_id).to_dict()

    @app.patch("/tasks/{task_id}/status")
    def update_task_status(task_id: str, body: StatusUpdateRequest) -> Dict[str, Any]:
        current = store.get_task(task_id)
        if (current.status, body.status) in OPERATOR_ONLY_TRANSITIONS:
            raise ForbiddenTransitionError(
                f"Transition '{current.status}' -> '{body.status}' can only be made by the operator"
            )
        return store.update_task_status(task_id, body.status, agent=True).to_dict()

    @app.get("/tasks/{task_id}/requirement")
    def get_task_requirement(task_id: str) -> Dict[str, Any]:
        return {"path": store.get_requirement_for_task(task_id)}

    @app.get("/features")
    def list_features() -> Dict[str, Any]:
        return {"features": [feature.to_dict() for feature in store.list_features()]}

    @app.get("/features/{feature_id}")
    def get_feature(feature_id: str) -> Dict[str, Any]:
        return store.get_feature(feature_id).to_dict()

    @app.get("/requirements")
    def list_requirements() -> Dict[str, Any]:
        return {"files": store.list_requirements()}

    @app.get("/requirements/path")
    def requirements_path() -> Dict[str, Any]:
        return {"path": store.requirements_path()}

    @app.get("/requirements/design")
    def design_guide() -> Dict[str, Any]:
        return store.read_design_guide()

    @app.post("/requirements")
    def create_requirement(body: CreateRequirementRequest) -> Dict[str, Any]:
        return store.create_requirement(body.path, body.content)

    @app.post("/interview/complete")
    def complete_interview(body: InterviewCompleteRequest) -> Dict[str, Any]:
        requirement_path = body.requirement_path
        task_ids = list(body.task_ids)
        feature_ids: List[str] = []
        if body.proposal is not None:
            result = store.apply_proposal(body.proposal)
            requirement_path = result.requirement_path or requirement_path
            task_ids.extend(result.task_ids)
            feature_ids = list(result.feature_ids)

        payload = {
            "success": True,
            "requirement_path": requirement_path,
            "task_ids": task_ids,
            "feature_ids": feature_ids,
        }
        if on_interview_complete is not None:
            try:
                on_interview_complete(dict(payload))
            except Exception as e:
                logger.error(f"Interview completion callback failed: {e}", exc_info=True)
        return payload

    return app


class HttpBridge:
    """Serve the Bridge on an ephemeral loopback port in a background thread."""

    def __init__(
        self,
        store: TaskStore,
        on_interview_complete: Optional[InterviewCallback] = None,
        host: str = "127.0.0.1",
    ):
        self.store = store
        self.host = host
        self.port: Optional[int] = None
        self.app = create_app(store, on_interview_complete)
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None

    @property
    def port_path(self):
        return self.store.workspace.port_path

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def start(self, timeout: float = 10.0) -> int:
        """Bind, start serving, publish the port file and return the port."""
        if self._thread is not None:
            raise RuntimeError("Bridge is already running")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind((self.host, 0))
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [sock]},
            name="shepherd-bridge",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() >= deadline:
                self.stop()
                raise RuntimeError(f"Bridge failed to start on {self.host}")
            time.sleep(0.01)

        write_port_file(self.port_path, self.port)
        logger.info(f"Bridge listening on {self.url}")
        return self.port

    def stop(self, timeout: float = 5.0) -> None:
        """Stop serving and withdraw the port file."""
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
        if self._socket is not None:
            self._socket.close()
        if self.port is not None:
            remove_port_file(self.port_path, self.port)
            logger.info(f"Bridge on port {self.port} stopped")
        self._server = None
        self._thread = None
        self._socket = None

    def __enter__(self) -> "HttpBridge":
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()
