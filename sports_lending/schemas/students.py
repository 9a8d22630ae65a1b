from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AddressDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None
    country: Optional[str] = None


class EmergencyContactDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = None


class NotificationPreferencesDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: bool = True
    sms: bool = True
    push: bool = True


class PreferencesDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    preferredSports: List[str] = []
    notifications: NotificationPreferencesDto = NotificationPreferencesDto()


class StudentProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fullName: Optional[str] = Field(default=None, min_length=1, max_length=255)
    department: Optional[str] = Field(default=None, min_length=1, max_length=100)
    year: Optional[int] = Field(default=None, ge=1, le=6)
    semester: Optional[int] = Field(default=None, ge=1, le=8)
    address: Optional[AddressDto] = None
    emergencyContact: Optional[EmergencyContactDto] = None
    preferences: Optional[PreferencesDto] = None
