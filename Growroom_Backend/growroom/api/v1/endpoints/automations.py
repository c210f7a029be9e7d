from typing import List, Optional, Any, Dict
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from growroom.api import deps
from growroom.db.session import get_db
from growroom.drivers.base import DeviceGateway
from growroom.models.automation import AutomationStatus, ExecutionStatus
from growroom.models.user import User
from growroom.schemas.automation import (
    AutomationCreate,
    AutomationResponse,
    AutomationUpdate,
    ExecuteRequest,
    ExecutionHistory,
    ExecutionResponse,
    StatusUpdate,
)
from growroom.services import execution_ledger
from growroom.services.automation_service import AutomationService

router = APIRouter()


def _service(db: Session, user: User, gateway: Optional[DeviceGateway] = None) -> AutomationService:
    return AutomationService(db, user.id, gateway=gateway)


@router.get("/", response_model=List[AutomationResponse])
def list_automations(
    section_id: Optional[int] = None,
    status: Optional[AutomationStatus] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """List the caller's automations, optionally by section and status."""
    return _service(db, current_user).list(section_id=section_id, status=status.value if status else None)


@router.post("/", response_model=AutomationResponse, status_code=201)
def create_automation(
    payload: AutomationCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    return _service(db, current_user).create(payload)


@router.get("/by-name/{name}", response_model=AutomationResponse)
def get_automation_by_name(
    name: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    return _service(db, current_user).get_by_name(name)


@router.get("/{automation_id}", response_model=AutomationResponse)
def get_automation(
    automation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    return _service(db, current_user).get(automation_id)


@router.put("/{automation_id}", response_model=AutomationResponse)
def update_automation(
    automation_id: int,
    payload: AutomationUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """Edit an automation. A conditions/actions list in the body replaces the stored one."""
    return _service(db, current_user).update(automation_id, payload)


@router.delete("/{automation_id}")
def delete_automation(
    automation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    _service(db, current_user).delete(automation_id)
    return {"deleted": True, "id": automation_id}


@router.patch("/{automation_id}/status", response_model=AutomationResponse)
def set_automation_status(
    automation_id: int,
    body: StatusUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """
    ACTIVE / PAUSED / DISABLED. Leaving ACTIVE cancels pending delayed
    actions, reversals and effectiveness checks.
    """
    return _service(db, current_user).set_status(automation_id, body.status)


@router.get("/{automation_id}/evaluate")
def evaluate_automation(
    automation_id: int,
    db: Session = Depends(get_db),
    gateway: DeviceGateway = Depends(deps.get_gateway),
    current_user: User = Depends(deps.get_current_user),
) -> Dict[str, Any]:
    """Dry-run the schedule gate and conditions. Nothing is dispatched or stored."""
    return _service(db, current_user, gateway).evaluate_only(automation_id)


@router.post("/{automation_id}/execute", response_model=ExecutionResponse)
def execute_automation(
    automation_id: int,
    body: Optional[ExecuteRequest] = None,
    db: Session = Depends(get_db),
    gateway: DeviceGateway = Depends(deps.get_gateway),
    current_user: User = Depends(deps.get_current_user),
):
    skip = bool(body.skip_conditions) if body else False
    return _service(db, current_user, gateway).execute_now(automation_id, skip_conditions=skip)


@router.get("/{automation_id}/executions", response_model=ExecutionHistory)
def list_executions(
    automation_id: int,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    automation = _service(db, current_user).get(automation_id)
    return execution_ledger.execution_history(
        db,
        automation.id,
        status=status.value if status else None,
        limit=limit,
        since=since,
        until=until,
    )


@router.get("/{automation_id}/effectiveness")
def get_effectiveness(
    automation_id: int,
    days: int = Query(7, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
) -> Dict[str, Any]:
    automation = _service(db, current_user).get(automation_id)
    return execution_ledger.effectiveness_stats(db, automation.id, days=days)


@router.get("/{automation_id}/alerts")
def get_dispatch_alerts(
    automation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
) -> List[Dict[str, Any]]:
    """Devices that failed their last consecutive dispatches from this automation."""
    automation = _service(db, current_user).get(automation_id)
    return execution_ledger.device_dispatch_alerts(db, automation.id)
