from __future__ import annotations

from typing import List, Optional

from sqlalchemy.orm import Query, Session, selectinload

from growroom.core.errors import NotFoundError, SectionNotFound
from growroom.models.automation import Automation, AutomationExecution
from growroom.models.location import Device, Room, Section


class AutomationRepository:
    """
    Every automation read for a user goes through here.

    The section -> room -> user join lives in one place so a new query path
    cannot forget the ownership filter.
    """

    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = int(user_id)

    def _owned(self) -> Query:
        return (
            self.db.query(Automation)
            .join(Section, Section.id == Automation.section_id)
            .join(Room, Room.id == Section.room_id)
            .filter(Room.user_id == self.user_id)
        )

    def list(self, section_id: Optional[int] = None, status: Optional[str] = None) -> List[Automation]:
        q = self._owned().options(selectinload(Automation.conditions), selectinload(Automation.actions))
        if section_id is not None:
            q = q.filter(Automation.section_id == section_id)
        if status:
            q = q.filter(Automation.status == status)
        return q.order_by(Automation.priority.desc(), Automation.id.asc()).all()

    def find(self, automation_id: int) -> Optional[Automation]:
        return self._owned().filter(Automation.id == automation_id).first()

    def get(self, automation_id: int) -> Automation:
        automation = self.find(automation_id)
        if automation is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        return automation

    def get_by_name(self, name: str) -> Automation:
        automation = self._owned().filter(Automation.name == name).order_by(Automation.id.asc()).first()
        if automation is None:
            # case-insensitive fallback, names come from people and assistants
            automation = (
                self._owned().filter(Automation.name.ilike(name.strip())).order_by(Automation.id.asc()).first()
            )
        if automation is None:
            raise NotFoundError(f"Automation '{name}' not found")
        return automation

    def get_execution(self, automation_id: int, execution_id: int) -> AutomationExecution:
        self.get(automation_id)
        execution = (
            self.db.query(AutomationExecution)
            .filter(AutomationExecution.id == execution_id, AutomationExecution.automation_id == automation_id)
            .first()
        )
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    def owned_section(self, section_id: int) -> Section:
        section = (
            self.db.query(Section)
            .join(Room, Room.id == Section.room_id)
            .filter(Section.id == section_id, Room.user_id == self.user_id)
            .first()
        )
        if section is None:
            raise SectionNotFound(f"Section {section_id} not found", details={"section_id": section_id})
        return section

    def section_device_ids(self, section_id: int) -> List[int]:
        return [d_id for (d_id,) in self.db.query(Device.id).filter(Device.section_id == section_id).all()]
