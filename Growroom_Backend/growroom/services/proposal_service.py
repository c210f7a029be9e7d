"""
Restricted creation path for automations suggested by the assistant.

Proposals are stored as PENDING_APPROVAL, which the dispatcher never loads,
so nothing proposed can touch a device until a person approves it.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List

from sqlalchemy.orm import Session

from growroom.core.clock import as_utc, utcnow
from growroom.core.errors import ConflictError, ValidationError
from growroom.models.automation import Automation, AutomationStatus
from growroom.models.location import Device
from growroom.services.automation_repository import AutomationRepository
from growroom.services.automation_service import AutomationService

logger = logging.getLogger(__name__)


class ProposalService:
    def __init__(self, db: Session, user_id: int, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.user_id = user_id
        self.repo = AutomationRepository(db, user_id)
        self.clock = clock

    def propose(self, proposal: Any) -> Automation:
        section = self.repo.owned_section(proposal.section_id)
        if not proposal.actions:
            raise ValidationError("a proposal needs at least one action")
        confidence = float(proposal.confidence)
        if confidence < 0.0 or confidence > 1.0:
            raise ValidationError("confidence must be between 0 and 1")

        now = as_utc(self.clock())
        devices = self.db.query(Device).filter(Device.section_id == section.id).order_by(Device.id.asc()).all()
        snapshot = {
            "proposedAt": now.isoformat(),
            "sectionName": section.name,
            "devicesInSection": [{"id": d.id, "name": d.name, "type": d.device_type} for d in devices],
            "conditionsCount": len(proposal.conditions or []),
            "actionsCount": len(proposal.actions),
        }

        automation = AutomationService(self.db, self.user_id, clock=self.clock).create(
            proposal,
            status=AutomationStatus.PENDING_APPROVAL,
            proposed_by_ai=True,
            ai_reason=proposal.reason,
            ai_confidence=confidence,
            ai_context_snapshot=snapshot,
            proposed_at=now,
        )
        logger.info(
            "automation proposed (confidence %.2f)",
            confidence,
            extra={"automation_id": automation.id, "user_id": self.user_id},
        )
        return automation

    def list_pending(self) -> List[Automation]:
        return self.repo.list(status=AutomationStatus.PENDING_APPROVAL.value)

    def _pending(self, automation_id: int) -> Automation:
        automation = self.repo.get(automation_id)
        if automation.status != AutomationStatus.PENDING_APPROVAL.value:
            raise ConflictError(
                f"Automation {automation_id} is not pending approval",
                details={"status": automation.status},
            )
        return automation

    def approve(self, automation_id: int) -> Automation:
        automation = self._pending(automation_id)
        automation.status = AutomationStatus.ACTIVE.value
        self.db.commit()
        self.db.refresh(automation)
        logger.info("proposal approved", extra={"automation_id": automation.id, "user_id": self.user_id})
        return automation

    def reject(self, automation_id: int) -> Automation:
        automation = self._pending(automation_id)
        automation.status = AutomationStatus.DISABLED.value
        self.db.commit()
        self.db.refresh(automation)
        logger.info("proposal rejected", extra={"automation_id": automation.id, "user_id": self.user_id})
        return automation
