from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from forumai.apps.api.deps import get_runtime, require_admin
from forumai.apps.api.errors import operation_response
from forumai.services import admin_ops
from forumai.services.runtime import Collaborators
from forumai.services.telemetry import telemetry_snapshot
from forumai.services.wakeup import enqueue_pending_items, run_wakeup_cycle


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class RegisterRequest(BaseModel):
    site_url: str
    admin_email: str


class DisconnectRequest(BaseModel):
    reason: str = ""
    confirm: bool = True


class IndexingRequest(BaseModel):
    item_ids: list[int] = Field(min_length=1)
    chunk_size: int | None = None
    overlap_percent: int | None = None
    include_images: bool | None = None
    allow_partial: bool = False


class DrainRequest(BaseModel):
    max_items: int | None = Field(default=None, ge=1)


class TaskCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    task_type: str
    status: str = "draft"
    board_id: int = 0
    config: dict[str, Any] = Field(default_factory=dict)


class TaskUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    status: str | None = None
    board_id: int | None = None
    config: dict[str, Any] | None = None


class BulkTaskRequest(BaseModel):
    task_ids: list[int] = Field(min_length=1)
    action: str


class ApprovalRequest(BaseModel):
    topic_id: int
    board_id: int
    is_topic: bool


@router.get("/state")
async def get_state(request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.resolve_state(collaborators=runtime))


@router.post("/tenant/register")
async def register(
    payload: RegisterRequest,
    request: Request,
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    result = await admin_ops.register_tenant(
        site_url=payload.site_url,
        admin_email=payload.admin_email,
        collaborators=runtime,
    )
    return operation_response(request, result)


@router.post("/tenant/disconnect")
async def disconnect(
    payload: DisconnectRequest,
    request: Request,
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    result = await admin_ops.disconnect_tenant(reason=payload.reason, confirm=payload.confirm, collaborators=runtime)
    return operation_response(request, result)


@router.post("/indexing/plan")
async def plan(payload: IndexingRequest, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    result = await admin_ops.plan_indexing(
        payload.item_ids,
        chunk_size=payload.chunk_size,
        overlap_percent=payload.overlap_percent,
        include_images=payload.include_images,
        collaborators=runtime,
    )
    return operation_response(request, result)


@router.post("/indexing/jobs")
async def enqueue(payload: IndexingRequest, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    result = await admin_ops.enqueue_indexing(
        payload.item_ids,
        chunk_size=payload.chunk_size,
        overlap_percent=payload.overlap_percent,
        include_images=payload.include_images,
        allow_partial=payload.allow_partial,
        collaborators=runtime,
    )
    return operation_response(request, result)


@router.get("/indexing/jobs/{job_id}")
async def job_progress(job_id: str, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.indexing_progress(job_id, collaborators=runtime))


@router.post("/indexing/cancel")
async def cancel(request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.cancel_indexing(collaborators=runtime))


@router.post("/indexing/drain")
async def drain(payload: DrainRequest, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    result = await admin_ops.drain_indexing(max_items=payload.max_items, collaborators=runtime)
    return operation_response(request, result)


@router.post("/indexing/clear")
async def clear(request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.clear_index(collaborators=runtime))


@router.post("/indexing/auto")
async def auto_index(request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await enqueue_pending_items(collaborators=runtime))


@router.get("/indexing/counts")
async def counts(request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.indexed_counts(collaborators=runtime))


@router.get("/indexing/options")
async def get_options(request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.get_indexing_options(collaborators=runtime))


@router.patch("/indexing/options")
async def patch_options(
    payload: dict[str, Any],
    request: Request,
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    return operation_response(request, await admin_ops.update_indexing_options(payload, collaborators=runtime))


@router.get("/tasks")
async def tasks(
    request: Request,
    status: str | None = Query(default=None),
    task_type: str | None = Query(default=None),
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    result = await admin_ops.list_tasks(status=status, task_type=task_type, collaborators=runtime)
    return operation_response(request, result)


@router.get("/tasks/due")
async def due_tasks(
    request: Request,
    now: datetime | None = Query(default=None),
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    return operation_response(request, await admin_ops.list_due_tasks(now, collaborators=runtime))


@router.post("/tasks")
async def create_task(
    payload: TaskCreateRequest,
    request: Request,
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    result = await admin_ops.create_task(
        name=payload.name,
        task_type=payload.task_type,
        config=payload.config,
        status=payload.status,
        board_id=payload.board_id,
        collaborators=runtime,
    )
    return operation_response(request, result)


@router.patch("/tasks/{task_id}")
async def update_task(
    task_id: int,
    payload: TaskUpdateRequest,
    request: Request,
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    result = await admin_ops.update_task(
        task_id,
        name=payload.name,
        status=payload.status,
        board_id=payload.board_id,
        config=payload.config,
        collaborators=runtime,
    )
    return operation_response(request, result)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: int, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.delete_task(task_id, collaborators=runtime))


@router.post("/tasks/{task_id}/duplicate")
async def duplicate_task(task_id: int, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.duplicate_task(task_id, collaborators=runtime))


@router.post("/tasks/{task_id}/run")
async def run_task(task_id: int, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.run_task(task_id, collaborators=runtime))


@router.get("/tasks/{task_id}/logs")
async def task_logs(
    task_id: int,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    return operation_response(request, await admin_ops.task_run_logs(task_id, limit=limit, collaborators=runtime))


@router.get("/tasks/{task_id}/stats")
async def task_stats(task_id: int, request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    return operation_response(request, await admin_ops.task_stats(task_id, collaborators=runtime))


@router.post("/tasks/bulk")
async def bulk_task_action(
    payload: BulkTaskRequest,
    request: Request,
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    result = await admin_ops.bulk_task_action(payload.task_ids, payload.action, collaborators=runtime)
    return operation_response(request, result)


@router.post("/events/content-approved")
async def content_approved(
    payload: ApprovalRequest,
    request: Request,
    runtime: Collaborators = Depends(get_runtime),
) -> JSONResponse:
    result = await admin_ops.content_approved(
        topic_id=payload.topic_id,
        board_id=payload.board_id,
        is_topic=payload.is_topic,
        collaborators=runtime,
    )
    return operation_response(request, result)


@router.post("/wakeup")
async def wakeup(request: Request, runtime: Collaborators = Depends(get_runtime)) -> JSONResponse:
    # Lets an external timer drive background work over HTTP instead of cron.
    summary = await run_wakeup_cycle(collaborators=runtime)
    return operation_response(request, admin_ops.OperationResult.success(summary))


@router.get("/telemetry")
async def telemetry(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
) -> JSONResponse:
    return operation_response(request, admin_ops.OperationResult.success(telemetry_snapshot(window_s)))
