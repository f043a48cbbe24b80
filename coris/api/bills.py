from __future__ import annotations

import asyncio
from uuid import UUID

from fastapi import APIRouter, Depends

from coris.api.deps import get_principal, get_runtime_dep
from coris.api.schemas import (
    MarkPaidRequest,
    OccurrenceAmountRequest,
    ScheduleSetRequest,
    TemplateCreateRequest,
    TemplateUpdateRequest,
)
from coris.logging import get_logger
from coris.service.errors import NotFoundError
from coris.service.runtime import Runtime
from coris.service.sessions import Principal

logger = get_logger(__name__)

# Everything here sits behind the request gate; handlers only see the principal.
router = APIRouter(prefix="/v1")


def _found(row):
    if row is None:
        raise NotFoundError()
    return row


# templates


@router.get("/templates/me", tags=["templates"])
async def list_templates(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    return await asyncio.to_thread(runtime.store.list_templates, principal.id)


@router.post("/templates", tags=["templates"])
async def create_template(
    body: TemplateCreateRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    """Create a bill template, then regenerate occurrences for planning.

    Regeneration is idempotent and best-effort; the planning view reports
    ``planning_incomplete`` if it did not run.
    """
    row = await asyncio.to_thread(
        runtime.store.create_template, principal.id, body.model_dump()
    )
    try:
        await asyncio.to_thread(runtime.store.refresh_planning, principal.id)
    except Exception as exc:
        logger.warning(
            "planning_refresh_failed",
            user_id=principal.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return row


@router.patch("/templates/{template_id}", tags=["templates"])
async def update_template(
    template_id: UUID,
    body: TemplateUpdateRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    row = await asyncio.to_thread(
        runtime.store.update_template,
        principal.id,
        str(template_id),
        body.model_dump(exclude_none=True),
    )
    return _found(row)


@router.post("/templates/{template_id}/deactivate", tags=["templates"])
async def deactivate_template(
    template_id: UUID,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    row = await asyncio.to_thread(
        runtime.store.deactivate_template, principal.id, str(template_id)
    )
    return _found(row)


# occurrences


@router.get("/occurrences/me", tags=["occurrences"])
async def list_occurrences(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    return await asyncio.to_thread(runtime.store.list_occurrences, principal.id)


@router.patch("/occurrences/{occurrence_id}/amount", tags=["occurrences"])
async def update_occurrence_amount(
    occurrence_id: UUID,
    body: OccurrenceAmountRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    # Only future unpaid occurrences of variable templates match
    row = await asyncio.to_thread(
        runtime.store.update_occurrence_amount, principal.id, str(occurrence_id), body.amount
    )
    return _found(row)


@router.post("/occurrences/{occurrence_id}/paid", tags=["occurrences"])
async def mark_occurrence_paid(
    occurrence_id: UUID,
    body: MarkPaidRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    row = await asyncio.to_thread(
        lambda: runtime.store.mark_occurrence_paid(
            principal.id,
            str(occurrence_id),
            paid_date=body.paid_date,
            amount_paid=body.amount_paid,
        )
    )
    return _found(row)


# pay schedule


@router.get("/schedule/me", tags=["schedule"])
async def get_schedule(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    return await asyncio.to_thread(runtime.store.get_active_schedule, principal.id)


@router.post("/schedule/set", tags=["schedule"])
async def set_schedule(
    body: ScheduleSetRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    """Replace the active pay schedule and rebuild paycheck windows."""
    return await asyncio.to_thread(
        lambda: runtime.store.set_schedule(
            principal.id,
            frequency=body.frequency,
            next_paycheck_date=body.next_paycheck_date,
            typical_net_pay=body.typical_net_pay,
        )
    )


@router.post("/schedule/regenerate", tags=["schedule"])
async def regenerate_schedule(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    if not await asyncio.to_thread(runtime.store.regenerate_schedule, principal.id):
        raise NotFoundError("No active pay schedule")
    return {"ok": True}


# planning


@router.get("/planning/windows", tags=["planning"])
async def planning_windows(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    windows = await asyncio.to_thread(runtime.store.list_window_totals, principal.id)
    incomplete = await asyncio.to_thread(runtime.store.has_unassigned_occurrences, principal.id)
    return {"planning_incomplete": incomplete, "windows": windows}


@router.get("/planning/window/{window_id}/items", tags=["planning"])
async def planning_window_items(
    window_id: UUID,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    return await asyncio.to_thread(
        runtime.store.list_window_items, principal.id, str(window_id)
    )


@router.get("/planning/integrity", tags=["planning"])
async def planning_integrity(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    return await asyncio.to_thread(runtime.store.get_planning_integrity, principal.id)


# reminders


@router.post("/reminders/generate", tags=["reminders"])
async def generate_reminders(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    await asyncio.to_thread(runtime.store.generate_reminders, principal.id)
    return {"ok": True}


@router.get("/reminders/pending", tags=["reminders"])
async def pending_reminders(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    return await asyncio.to_thread(runtime.store.list_pending_reminders, principal.id)


@router.get("/reminders/upcoming", tags=["reminders"])
async def upcoming_reminders(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime_dep),
):
    return await asyncio.to_thread(runtime.store.list_upcoming_reminders, principal.id)
