from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sports_lending.services.clock import as_naive_utc


class CreateRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentId: int
    quantity: int = Field(ge=1)
    borrowDate: datetime
    returnDate: datetime
    purpose: str = Field(min_length=1, max_length=200)
    location: str = Field(min_length=1, max_length=200)
    specialRequirements: Optional[str] = Field(default=None, max_length=300)
    studentNotes: Optional[str] = Field(default=None, max_length=500)
    isUrgent: bool = False

    @field_validator("borrowDate", "returnDate")
    @classmethod
    def _normalize_dates(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


class ApproveRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = Field(default=None, max_length=500)


class RejectRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: str = Field(max_length=200)


class ReturnRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isDamaged: bool = False
    damageDescription: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=500)


class ExtendRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newReturnDate: datetime
    reason: Optional[str] = Field(default=None, max_length=300)

    @field_validator("newReturnDate")
    @classmethod
    def _normalize_date(cls, value: datetime) -> datetime:
        return as_naive_utc(value)
