from __future__ import annotations

from fastapi import HTTPException, Request

from helpdesk.tickets.commands import LifecycleController


async def get_lifecycle_controller(request: Request) -> LifecycleController:
    controller = getattr(request.app.state, "lifecycle", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Ticket lifecycle is not configured")
    return controller
