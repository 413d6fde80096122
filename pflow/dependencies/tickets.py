from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from pflow.workflow.coordinator import WorkflowCoordinator


async def get_workflow_coordinator(request: Request) -> WorkflowCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Ticket workflow is not configured")
    return coordinator


CoordinatorDep = Annotated[WorkflowCoordinator, Depends(get_workflow_coordinator)]
