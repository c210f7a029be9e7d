from typing import List
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from growroom.api import deps
from growroom.db.session import get_db
from growroom.models.user import User
from growroom.schemas.automation import AutomationProposal, AutomationResponse
from growroom.services.proposal_service import ProposalService

router = APIRouter()


@router.post("/", response_model=AutomationResponse, status_code=201)
def propose_automation(
    proposal: AutomationProposal,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """
    Create an automation on behalf of the assistant.
    It stays PENDING_APPROVAL and is never evaluated until approved.
    """
    return ProposalService(db, current_user.id).propose(proposal)


@router.get("/pending", response_model=List[AutomationResponse])
def list_pending_proposals(
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    return ProposalService(db, current_user.id).list_pending()


@router.post("/{automation_id}/approve", response_model=AutomationResponse)
def approve_proposal(
    automation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    return ProposalService(db, current_user.id).approve(automation_id)


@router.post("/{automation_id}/reject", response_model=AutomationResponse)
def reject_proposal(
    automation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    return ProposalService(db, current_user.id).reject(automation_id)
