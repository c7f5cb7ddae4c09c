from __future__ import annotations

import hmac
import json
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Response
from fastapi.responses import StreamingResponse

from stepflow.api.schemas import (
    AuthResponse,
    Envelope,
    ExecuteRequest,
    ExecutionResponse,
    ExecutionStepResponse,
    LoginRequest,
    ParseRequest,
    ScheduleRequest,
    ScheduleResponse,
    SignupRequest,
    TemplateInstantiateRequest,
    TimelineResponse,
    UserResponse,
    WorkflowCreateRequest,
    WorkflowUpdateRequest,
)
from stepflow.logging import get_logger
from stepflow.service.auth import AuthContext
from stepflow.service.coordinator import ProgressEvent, summarize_steps
from stepflow.service.runtime import get_runtime
from stepflow.service.templates import list_templates
from stepflow.service.workflows import serialize_workflow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _sse_dumps(data: dict) -> str:
    return json.dumps(data, default=str)


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


# auth
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest, user_agent: Optional[str] = Header(None)
):
    runtime = get_runtime()
    user, session = await runtime.auth.signup(
        email=body.email,
        password=body.password,
        handle=body.handle,
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=session.id,
            session_expires_at=session.expires_at,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, user_agent: Optional[str] = Header(None)):
    runtime = get_runtime()
    user, session = await runtime.auth.login(
        email=body.email, password=body.password, user_agent=user_agent
    )
    if not user or not session:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=session.id,
            session_expires_at=session.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.revoke(principal.session_id)
    return Envelope(status="ok", data={"ok": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id, email=user.email, handle=user.handle, created_at=user.created_at
        ),
    )


# workflows
@router.get("/workflows", response_model=Envelope, tags=["workflows"])
async def list_workflows(
    response: Response,
    status: Optional[str] = Query(None, pattern="^(draft|active|paused|archived)$"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    items, cache_hit = await runtime.workflows.list_workflows(principal.user_id, status)
    response.headers["X-Cache"] = "HIT" if cache_hit else "MISS"
    return Envelope(status="ok", data={"workflows": items})


@router.post("/workflows", response_model=Envelope, status_code=201, tags=["workflows"])
async def create_workflow(
    body: WorkflowCreateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    workflow = await runtime.workflows.create(
        principal.user_id,
        name=body.name,
        description=body.description,
        steps=[step.to_stored() for step in body.steps],
        status=body.status,
    )
    return Envelope(status="ok", data={"workflow": serialize_workflow(workflow)})


@router.post("/workflows/parse", response_model=Envelope, tags=["workflows"])
async def parse_workflow(body: ParseRequest, principal: AuthContext = Depends(get_user)):
    """Draft steps from an instruction; nothing is saved."""
    runtime = get_runtime()
    parsed = await runtime.parser.parse(body.instruction, body.available_apps)
    return Envelope(status="ok", data=parsed.to_dict())


@router.get("/templates", response_model=Envelope, tags=["workflows"])
async def get_templates(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok", data={"templates": [item.to_dict() for item in list_templates()]}
    )


@router.post(
    "/templates/{template_id}/workflows",
    response_model=Envelope,
    status_code=201,
    tags=["workflows"],
)
async def create_workflow_from_template(
    template_id: str,
    body: Optional[TemplateInstantiateRequest] = Body(None),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    workflow = await runtime.workflows.create_from_template(
        principal.user_id, template_id, name=body.name if body else None
    )
    return Envelope(status="ok", data={"workflow": serialize_workflow(workflow)})


@router.get("/workflows/{workflow_id}", response_model=Envelope, tags=["workflows"])
async def get_workflow(workflow_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    workflow = runtime.workflows.get(principal.user_id, workflow_id)
    return Envelope(status="ok", data={"workflow": serialize_workflow(workflow)})


@router.put("/workflows/{workflow_id}", response_model=Envelope, tags=["workflows"])
async def update_workflow(
    workflow_id: str,
    body: WorkflowUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    workflow = await runtime.workflows.update(
        principal.user_id,
        workflow_id,
        name=body.name,
        description=body.description,
        steps=[step.to_stored() for step in body.steps] if body.steps is not None else None,
        status=body.status,
    )
    return Envelope(status="ok", data={"workflow": serialize_workflow(workflow)})


@router.delete("/workflows/{workflow_id}", response_model=Envelope, tags=["workflows"])
async def delete_workflow(workflow_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.workflows.delete(principal.user_id, workflow_id)
    return Envelope(status="ok", data={"ok": True})


@router.post(
    "/workflows/{workflow_id}/copy",
    response_model=Envelope,
    status_code=201,
    tags=["workflows"],
)
async def copy_workflow(workflow_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    workflow = await runtime.workflows.copy(principal.user_id, workflow_id)
    return Envelope(status="ok", data={"workflow": serialize_workflow(workflow)})


# executions
@router.post("/workflows/{workflow_id}/execute", response_model=Envelope, tags=["executions"])
async def execute_workflow(
    workflow_id: str,
    body: Optional[ExecuteRequest] = Body(None),
    wait: bool = Query(False),
    principal: AuthContext = Depends(get_user),
):
    """Start an execution.

    By default the run continues in the background and the response carries
    only its id. With ``wait=true`` the request blocks until the execution is
    terminal; a failed step surfaces as an error envelope.
    """
    runtime = get_runtime()
    input_data = body.input_data if body else {}
    if wait:
        execution = await runtime.workflows.run_execution(
            principal.user_id, workflow_id, input_data
        )
        return Envelope(
            status="ok",
            data={"execution": ExecutionResponse.from_model(execution).model_dump(mode="json")},
        )
    execution = runtime.workflows.start_execution(principal.user_id, workflow_id, input_data)
    return Envelope(
        status="ok",
        data={
            "execution_id": execution.id,
            "status": "running",
            "message": "Workflow execution started",
        },
    )


@router.post("/workflows/{workflow_id}/execute-stream", tags=["executions"])
async def execute_workflow_stream(
    workflow_id: str,
    body: Optional[ExecuteRequest] = Body(None),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    events = runtime.workflows.stream_execution(
        principal.user_id, workflow_id, body.input_data if body else {}
    )

    async def event_generator() -> AsyncIterator[str]:
        event: ProgressEvent
        async for event in events:
            yield event.to_sse(_sse_dumps)

    return StreamingResponse(
        event_generator(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.get(
    "/workflows/{workflow_id}/executions", response_model=Envelope, tags=["executions"]
)
async def list_executions(
    workflow_id: str,
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    executions = runtime.workflows.list_executions(principal.user_id, workflow_id, limit)
    return Envelope(
        status="ok",
        data={
            "executions": [
                ExecutionResponse.from_model(item).model_dump(mode="json")
                for item in executions
            ]
        },
    )


@router.get(
    "/executions/{execution_id}/timeline", response_model=Envelope, tags=["executions"]
)
async def execution_timeline(
    execution_id: str, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    execution, steps = runtime.workflows.timeline(principal.user_id, execution_id)
    timeline = TimelineResponse(
        execution=ExecutionResponse.from_model(execution),
        steps=[ExecutionStepResponse.from_model(step) for step in steps],
        summary=summarize_steps(steps),
    )
    return Envelope(status="ok", data=timeline.model_dump(mode="json"))


# schedules
@router.get("/workflows/{workflow_id}/schedule", response_model=Envelope, tags=["schedules"])
async def get_schedule(workflow_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    schedule = runtime.schedules.get(principal.user_id, workflow_id)
    return Envelope(
        status="ok",
        data={
            "schedule": ScheduleResponse.from_model(schedule).model_dump(mode="json")
            if schedule
            else None
        },
    )


@router.put("/workflows/{workflow_id}/schedule", response_model=Envelope, tags=["schedules"])
async def put_schedule(
    workflow_id: str,
    body: ScheduleRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    schedule = runtime.schedules.upsert(
        principal.user_id,
        workflow_id,
        cron=body.cron,
        tz_name=body.timezone,
        enabled=body.enabled,
    )
    return Envelope(
        status="ok",
        data={"schedule": ScheduleResponse.from_model(schedule).model_dump(mode="json")},
    )


@router.delete(
    "/workflows/{workflow_id}/schedule", response_model=Envelope, tags=["schedules"]
)
async def delete_schedule(workflow_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.schedules.delete(principal.user_id, workflow_id)
    return Envelope(status="ok", data={"ok": True})


def _cron_authorized(authorization: Optional[str], secret: Optional[str]) -> bool:
    if not secret:
        return True
    expected = f"Bearer {secret}"
    return hmac.compare_digest((authorization or "").encode(), expected.encode())


@router.post("/cron/run", response_model=Envelope, tags=["schedules"])
async def run_due_schedules(authorization: Optional[str] = Header(None)):
    """Run every due schedule once; meant for an external cron trigger."""
    runtime = get_runtime()
    if not _cron_authorized(authorization, runtime.settings.cron_secret):
        raise _http_error("unauthorized", "invalid cron secret", status_code=401)
    results = await runtime.schedules.run_due()
    return Envelope(status="ok", data={"ok": True, "ran": len(results), "results": results})
