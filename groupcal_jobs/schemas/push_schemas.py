from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class PushMessage(BaseModel):
    """One Expo push message, serialized as-is into the request body."""

    to: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sound: Optional[str] = "default"
    priority: Literal["default", "normal", "high"] = "high"
    channel_id: Optional[str] = Field(default=None, serialization_alias="channelId")

    def to_request(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PushTicket(BaseModel):
    """Per-message result returned by the Expo push service."""

    status: Literal["ok", "error"]
    id: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @property
    def error_code(self) -> Optional[str]:
        if self.details:
            return self.details.get("error")
        return None


class PushDeliveryError(BaseModel):
    """A message the transport did not accept."""

    message: PushMessage
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PushSendResult(BaseModel):
    attempted: int = 0
    accepted: int = 0
    failures: List[PushDeliveryError] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)
