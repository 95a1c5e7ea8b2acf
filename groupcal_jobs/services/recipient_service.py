from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from groupcal_jobs.db.models import GroupMember, User
from .expo_push_service import ExpoPushService


class PushRecipient(BaseModel):
    user_id: str
    push_token: str


class RecipientService:
    """Resolves which group members should receive a group reminder"""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_push_recipients(
        self, group_id: str, exclude_user_id: Optional[str] = None
    ) -> List[PushRecipient]:
        """
        Members of a group that have a valid push token.

        The event creator is excluded; they already hold a local notification
        on their own device. Members without a user row or without a valid
        token are dropped.
        """
        conditions = [GroupMember.group_id == group_id]
        if exclude_user_id:
            conditions.append(GroupMember.user_id != exclude_user_id)

        result = self.db.execute(
            select(GroupMember.user_id, User.push_token)
            .outerjoin(User, User.id == GroupMember.user_id)
            .where(and_(*conditions))
            .order_by(GroupMember.user_id)
        )

        recipients: List[PushRecipient] = []
        for user_id, push_token in result.all():
            if ExpoPushService.is_expo_push_token(push_token):
                recipients.append(PushRecipient(user_id=user_id, push_token=push_token))
        return recipients

    def get_user_group_ids(self, user_id: str) -> List[str]:
        """Ids of every group the user belongs to."""
        result = self.db.execute(
            select(GroupMember.group_id).where(GroupMember.user_id == user_id)
        )
        return list(result.scalars().all())
