from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from apps.api.dependencies.auth import Role, User, role_required
from apps.api.tickets.service import TicketLifecycleService

require_customer = role_required(Role.CUSTOMER)
require_agent = role_required(Role.AGENT)

CustomerUser = Annotated[User, Depends(require_customer)]
AgentUser = Annotated[User, Depends(require_agent)]


async def get_ticket_service(request: Request) -> TicketLifecycleService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


TicketServiceDep = Annotated[TicketLifecycleService, Depends(get_ticket_service)]
