# src/guardian_sync/server/app.py

"""
HTTP + WebSocket surface of the server, and its composition root.

create_app() wires the SQLite store, the auth service, the connection
registry, the Task Authority and the reminder scheduler into a ServerState
kept on app.state, then exposes the REST routes and the /ws channel.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import get_settings
from ..core.errors import AuthenticationError, AuthorizationError, GuardianSyncError, NotFoundError
from ..core.state import ServerState
from ..tasks.reminder_scheduler import ReminderScheduler, resolve_timezone, run_reminder_scheduler
from ..tasks.task_authority import TaskAuthority
from ..tasks.task_models import Role, User
from ..tasks.task_store import TaskStore
from .auth import AuthService
from .channel import serve_channel
from .registry import InMemoryConnectionRegistry
from .schemas import LinkIn, LoginIn, RegisterIn, StatusUpdateIn, TaskCreateIn

logger = logging.getLogger(__name__)


def create_server_state(settings) -> ServerState:
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    store = TaskStore(settings.server_db_path)
    registry = InMemoryConnectionRegistry()
    return ServerState(
        settings=settings,
        store=store,
        auth=AuthService(store, secret=settings.jwt_secret, token_ttl_hours=settings.token_ttl_hours),
        registry=registry,
        authority=TaskAuthority(store, registry),
        reminders=ReminderScheduler(
            store,
            registry,
            lookahead_minutes=settings.reminder_lookahead_minutes,
            tz=resolve_timezone(settings.reminder_timezone),
        ),
    )


# ---- dependencies ----


def get_state(request: Request) -> ServerState:
    return request.app.state.guardian


def current_user(
        request: Request,
        authorization: str | None = Header(default=None),
) -> User:
    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            token = value.strip()
    return get_state(request).auth.verify_token(token)


def require_role(user: User, role: Role) -> None:
    if user.role != role:
        raise AuthorizationError("Access denied")


# ---- routes ----
# Plain `def` routes only do blocking work (bcrypt, SQLite); FastAPI runs them
# in its threadpool. Task mutations are async and offload their own writes.

router = APIRouter(prefix="/api")


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(body: RegisterIn, state: ServerState = Depends(get_state)) -> dict:
    user, token = state.auth.register(name=body.name, password=body.password, role=body.role)
    return {"token": token, "user": user.public_dict(with_code=True)}


@router.post("/auth/login")
def login(body: LoginIn, state: ServerState = Depends(get_state)) -> dict:
    user, token = state.auth.login(name=body.name, password=body.password)
    return {"token": token, "user": user.public_dict(with_code=True)}


@router.get("/auth/me")
def me(user: User = Depends(current_user)) -> dict:
    return user.public_dict()


@router.get("/dependent/code")
def dependent_code(user: User = Depends(current_user)) -> dict:
    require_role(user, Role.DEPENDENT)
    if not user.code:
        raise NotFoundError("Code not found")
    return {"code": user.code}


@router.post("/guardian/link")
def link_dependent(
        body: LinkIn,
        user: User = Depends(current_user),
        state: ServerState = Depends(get_state),
) -> dict:
    require_role(user, Role.GUARDIAN)
    dependent = state.auth.link(user, body.code)
    return {
        "message": "Link established",
        "dependent": {"id": dependent.id, "name": dependent.name},
    }


@router.get("/guardian/dependents")
def list_dependents(
        user: User = Depends(current_user),
        state: ServerState = Depends(get_state),
) -> list[dict]:
    require_role(user, Role.GUARDIAN)
    return [{"id": d.id, "name": d.name} for d in state.store.list_dependents(user.id)]


@router.post("/tasks")
async def create_task(
        body: TaskCreateIn,
        user: User = Depends(current_user),
        state: ServerState = Depends(get_state),
) -> JSONResponse:
    task, created = await state.authority.create_task(user, body.model_dump())
    code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=task.to_dict())


@router.get("/tasks/guardian")
def guardian_tasks(
        user: User = Depends(current_user),
        state: ServerState = Depends(get_state),
) -> list[dict]:
    return [t.to_dict() for t in state.authority.list_tasks(user, Role.GUARDIAN.value)]


@router.get("/tasks/dependent")
def dependent_tasks(
        user: User = Depends(current_user),
        state: ServerState = Depends(get_state),
) -> list[dict]:
    return [t.to_dict() for t in state.authority.list_tasks(user, Role.DEPENDENT.value)]


@router.patch("/tasks/{task_id}/status")
async def update_task_status(
        task_id: str,
        body: StatusUpdateIn,
        user: User = Depends(current_user),
        state: ServerState = Depends(get_state),
) -> dict:
    task = await state.authority.update_status(
        user,
        task_id,
        body.status,
        last_updated=body.lastUpdated,
        force=body.force,
    )
    return task.to_dict()


@router.delete("/tasks/{task_id}")
async def delete_task(
        task_id: str,
        user: User = Depends(current_user),
        state: ServerState = Depends(get_state),
) -> dict:
    await state.authority.delete_task(user, task_id)
    return {"message": "Task deleted"}


# ---- app factory ----


def create_app(settings=None, *, run_scheduler: bool = True) -> FastAPI:
    """
    Build the FastAPI app.

    Keeping settings injectable makes the app easy to test; if settings is None,
    falls back to get_settings(). run_scheduler=False leaves the reminder loop
    off (tests drive ReminderScheduler.tick() directly).
    """
    if settings is None:
        settings = get_settings()

    state = create_server_state(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reminder_task: asyncio.Task | None = None
        if run_scheduler:
            reminder_task = asyncio.create_task(
                run_reminder_scheduler(
                    state.reminders,
                    interval_seconds=settings.reminder_interval_seconds,
                )
            )
            logger.info("Reminder scheduler started interval=%ss", settings.reminder_interval_seconds)
        try:
            yield
        finally:
            if reminder_task is not None:
                reminder_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reminder_task

    app = FastAPI(title=getattr(settings, "app_name", "guardian-sync"), lifespan=lifespan)
    app.state.guardian = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(getattr(settings, "cors_origins", [])),
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        allow_credentials=True,
    )

    @app.exception_handler(GuardianSyncError)
    async def _domain_error(request: Request, exc: GuardianSyncError) -> JSONResponse:
        if isinstance(exc, AuthenticationError):
            logger.debug("%s %s -> 401", request.method, request.url.path)
        elif exc.status_code >= 500:
            logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _bad_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request: {where} {first.get('msg', '')}".strip()
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message})

    app.include_router(router)

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        await serve_channel(websocket, state)

    return app
