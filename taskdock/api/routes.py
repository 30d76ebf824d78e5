from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response
from fastapi.responses import PlainTextResponse

from taskdock.api.schemas import (
    AccessTokenResponse,
    Envelope,
    ListRequest,
    ListResponse,
    ListsResponse,
    LoginRequest,
    SignupRequest,
    TaskRequest,
    TaskResponse,
    TasksResponse,
    TaskUpdateRequest,
    UserResponse,
)
from taskdock.logging import get_logger
from taskdock.service.errors import StoreUnavailable, VerificationRequired
from taskdock.service.gate import (
    ACCESS_TOKEN_HEADER,
    REFRESH_TOKEN_HEADER,
    AccessIdentity,
    SessionIdentity,
)
from taskdock.service.runtime import get_runtime
from taskdock.storage.models import Task, TaskList, User

logger = get_logger(__name__)

router = APIRouter()


async def require_access(request: Request) -> AccessIdentity:
    """Admit requests carrying a valid ``x-access-token``."""
    return get_runtime().gate.require_access(request.headers)


async def require_session(request: Request) -> SessionIdentity:
    """Admit requests carrying ``_id`` plus an unexpired ``x-refresh-token``."""
    return get_runtime().gate.require_session(request.headers)


async def enforce_ip_tracking(
    request: Request,
    x_verification_token: Optional[str] = Header(
        None, convert_underscores=False, alias="x-verification-token"
    ),
) -> None:
    runtime = get_runtime()
    if not runtime.settings.ip_tracking_enabled:
        return
    address = request.client.host if request.client else None
    if not address:
        return
    try:
        flagged = await runtime.ip_tracker.needs_verification(address)
    except StoreUnavailable as exc:
        # Tracking is advisory; an outage must not lock everyone out
        logger.warning("ip_tracking_unavailable", address=address, error=exc.message)
        return
    if not flagged:
        return
    bypass = runtime.settings.verification_bypass_token
    if bypass and x_verification_token and hmac.compare_digest(
        x_verification_token.encode(), bypass.encode()
    ):
        logger.info("ip_verification_passed", address=address)
        return
    logger.warning("ip_verification_required", address=address)
    raise VerificationRequired()


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        session_count=len(user.sessions),
        created_at=user.created_at,
    )


def _list_to_response(task_list: TaskList) -> ListResponse:
    return ListResponse(id=task_list.id, title=task_list.title, owner_id=task_list.owner_id)


def _task_to_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id, title=task.title, list_id=task.list_id, completed=task.completed
    )


def _apply_token_headers(
    response: Response, access_token: str, refresh_token: Optional[str]
) -> None:
    response.headers[ACCESS_TOKEN_HEADER] = access_token
    if refresh_token:
        response.headers[REFRESH_TOKEN_HEADER] = refresh_token


@router.get("/", response_class=PlainTextResponse, include_in_schema=False)
async def root() -> str:
    return "taskdock api is running"


@router.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    return Envelope(status="ok", data={"status": "ok"})


@router.post(
    "/users/signup",
    response_model=Envelope,
    status_code=201,
    tags=["users"],
    dependencies=[Depends(enforce_ip_tracking)],
)
async def signup(body: SignupRequest, response: Response):
    """Create an account and its first session.

    The access and refresh tokens are returned in the ``x-access-token`` and
    ``x-refresh-token`` response headers; the body carries the user.

    Raises:
        409: If the email is already registered
        429: If the client address must pass verification first
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.signup(body.email, body.password)
    _apply_token_headers(response, tokens.access_token, tokens.refresh_token)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post(
    "/users/login",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(enforce_ip_tracking)],
)
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password and open a new session.

    Raises:
        401: If credentials are invalid
        429: If the client address must pass verification first
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password)
    _apply_token_headers(response, tokens.access_token, tokens.refresh_token)
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/users/me/access-token", response_model=Envelope, tags=["users"])
async def refresh_access_token(
    response: Response, identity: SessionIdentity = Depends(require_session)
):
    """Mint a new access token for the session named by ``_id`` and ``x-refresh-token``."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(identity.user_id, identity.refresh_token)
    _apply_token_headers(response, tokens.access_token, tokens.refresh_token)
    return Envelope(
        status="ok",
        data=AccessTokenResponse(
            access_token=tokens.access_token, refresh_token=tokens.refresh_token
        ),
    )


@router.get("/lists", response_model=Envelope, tags=["lists"])
async def list_lists(identity: AccessIdentity = Depends(require_access)):
    runtime = get_runtime()
    lists = runtime.lists.list_lists(identity.user_id)
    return Envelope(
        status="ok", data=ListsResponse(items=[_list_to_response(item) for item in lists])
    )


@router.post("/lists", response_model=Envelope, status_code=201, tags=["lists"])
async def create_list(body: ListRequest, identity: AccessIdentity = Depends(require_access)):
    runtime = get_runtime()
    task_list = runtime.lists.create_list(identity.user_id, body.title)
    return Envelope(status="ok", data=_list_to_response(task_list))


@router.patch("/lists/{list_id}", response_model=Envelope, tags=["lists"])
async def update_list(
    body: ListRequest,
    list_id: str = Path(..., max_length=64),
    identity: AccessIdentity = Depends(require_access),
):
    runtime = get_runtime()
    task_list = runtime.lists.update_list(identity.user_id, list_id, body.title)
    return Envelope(status="ok", data=_list_to_response(task_list))


@router.delete("/lists/{list_id}", response_model=Envelope, tags=["lists"])
async def delete_list(
    list_id: str = Path(..., max_length=64),
    identity: AccessIdentity = Depends(require_access),
):
    """Delete an owned list together with all of its tasks."""
    runtime = get_runtime()
    task_list = runtime.lists.delete_list(identity.user_id, list_id)
    return Envelope(status="ok", data=_list_to_response(task_list))


@router.get("/lists/{list_id}/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    list_id: str = Path(..., max_length=64),
    identity: AccessIdentity = Depends(require_access),
):
    runtime = get_runtime()
    tasks = runtime.lists.list_tasks(identity.user_id, list_id)
    return Envelope(
        status="ok", data=TasksResponse(items=[_task_to_response(task) for task in tasks])
    )


@router.post(
    "/lists/{list_id}/tasks", response_model=Envelope, status_code=201, tags=["tasks"]
)
async def create_task(
    body: TaskRequest,
    list_id: str = Path(..., max_length=64),
    identity: AccessIdentity = Depends(require_access),
):
    runtime = get_runtime()
    task = runtime.lists.create_task(identity.user_id, list_id, body.title)
    return Envelope(status="ok", data=_task_to_response(task))


@router.patch("/lists/{list_id}/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    body: TaskUpdateRequest,
    list_id: str = Path(..., max_length=64),
    task_id: str = Path(..., max_length=64),
    identity: AccessIdentity = Depends(require_access),
):
    runtime = get_runtime()
    task = runtime.lists.update_task(
        identity.user_id,
        list_id,
        task_id,
        title=body.title,
        completed=body.completed,
    )
    return Envelope(status="ok", data=_task_to_response(task))


@router.delete("/lists/{list_id}/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(
    list_id: str = Path(..., max_length=64),
    task_id: str = Path(..., max_length=64),
    identity: AccessIdentity = Depends(require_access),
):
    runtime = get_runtime()
    task = runtime.lists.delete_task(identity.user_id, list_id, task_id)
    return Envelope(status="ok", data=_task_to_response(task))
