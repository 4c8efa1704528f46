"""FastAPI dependencies: the scheduling service and the caller identity."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request

from careslot.scheduling.models import Caller, CallerRole
from careslot.scheduling.service import SchedulingService


def get_service(request: Request) -> SchedulingService:
    return request.app.state.service


async def get_caller(
    x_caller_id: Optional[str] = Header(default=None),
    x_caller_role: Optional[str] = Header(default=None),
) -> Caller:
    """Identity asserted by the upstream auth collaborator.

    Expects ``X-Caller-Id`` and ``X-Caller-Role`` (doctor, patient or admin).
    """
    if not x_caller_id or not x_caller_role:
        raise HTTPException(status_code=401, detail="Missing X-Caller-Id or X-Caller-Role header")
    try:
        role = CallerRole(x_caller_role.lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown caller role: {x_caller_role}")
    return Caller(id=x_caller_id, role=role)
