from typing import Optional

from pydantic import field_validator

from groupcal_jobs.db.models import CalendarEvent
from .camel_base_model import CamelCaseBaseModel

PERSONAL_GROUP_ID = "personal"


class CalendarEventPayload(CamelCaseBaseModel):
    """Calendar event record as delivered by the event-created trigger."""

    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    time: Optional[str] = None
    group_id: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("start_date", "time", "group_id", "title", mode="before")
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def is_group_event(self) -> bool:
        return bool(self.group_id) and self.group_id != PERSONAL_GROUP_ID

    @classmethod
    def from_model(cls, event: CalendarEvent) -> "CalendarEventPayload":
        return cls(
            id=event.id,
            title=event.title,
            description=event.description,
            start_date=event.start_date,
            time=event.time,
            group_id=event.group_id,
            user_id=event.user_id,
        )
