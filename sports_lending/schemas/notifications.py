from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sports_lending.services.clock import as_naive_utc


NotificationType = Literal["info", "success", "warning", "error", "new_equipment", "request_update", "system_alert"]
NotificationCategory = Literal["general", "equipment", "request", "system", "maintenance"]
NotificationPriority = Literal["low", "medium", "high", "urgent"]


class RecipientsDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    all: bool = False
    students: List[int] = []
    admins: List[int] = []


class NotificationMetadataDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentId: Optional[int] = None
    requestId: Optional[int] = None
    studentId: Optional[int] = None
    customData: Optional[Dict[str, Any]] = None


class CreateNotificationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=500)
    type: NotificationType = "info"
    category: NotificationCategory = "general"
    priority: NotificationPriority = "medium"
    recipients: Optional[RecipientsDto] = None
    expiresAt: Optional[datetime] = None
    actionUrl: Optional[str] = Field(default=None, max_length=500)
    actionText: Optional[str] = Field(default=None, max_length=100)
    metadata: Optional[NotificationMetadataDto] = None
    tags: List[str] = []

    @field_validator("expiresAt")
    @classmethod
    def _normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)
