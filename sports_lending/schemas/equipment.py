from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


EquipmentCategory = Literal[
    "Football",
    "Basketball",
    "Cricket",
    "Tennis",
    "Badminton",
    "Volleyball",
    "Hockey",
    "Athletics",
    "Swimming",
    "Gym",
    "Table Tennis",
    "Squash",
    "Rugby",
    "Baseball",
    "Other",
]
EquipmentCondition = Literal["New", "Excellent", "Good", "Fair", "Poor"]


class SpecificationsDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    size: Optional[str] = None
    weight: Optional[str] = None
    material: Optional[str] = None
    color: Optional[str] = None
    condition: Optional[EquipmentCondition] = None


class QuantityDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    total: Optional[int] = Field(default=None, ge=0)
    available: Optional[int] = Field(default=None, ge=0)
    borrowed: Optional[int] = Field(default=None, ge=0)
    damaged: Optional[int] = Field(default=None, ge=0)


class EquipmentImageDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    url: str
    alt: Optional[str] = None
    isPrimary: bool = False


class LocationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    building: Optional[str] = None
    room: Optional[str] = None
    shelf: Optional[str] = None
    rack: Optional[str] = None


class PurchaseInfoDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    purchaseDate: Optional[date] = None
    purchasePrice: Optional[float] = Field(default=None, ge=0)
    supplier: Optional[str] = None
    warrantyExpiry: Optional[date] = None


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=100)
    category: EquipmentCategory
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)
    specifications: Optional[SpecificationsDto] = None
    quantity: QuantityDto
    images: List[EquipmentImageDto] = []
    location: Optional[LocationDto] = None
    purchaseInfo: Optional[PurchaseInfoDto] = None
    isNewArrival: bool = False
    tags: List[str] = []
    barcode: Optional[str] = None
    notifyStudents: bool = True


class EquipmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: Optional[EquipmentCategory] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)
    specifications: Optional[SpecificationsDto] = None
    quantity: Optional[QuantityDto] = None
    images: Optional[List[EquipmentImageDto]] = None
    location: Optional[LocationDto] = None
    purchaseInfo: Optional[PurchaseInfoDto] = None
    isActive: Optional[bool] = None
    isNewArrival: Optional[bool] = None
    tags: Optional[List[str]] = None
    barcode: Optional[str] = None
