from __future__ import annotations

from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from sports_lending.models.lending_models import Equipment
from sports_lending.schemas.equipment import EquipmentCreate, EquipmentUpdate
from sports_lending.services.clock import utc_now
from sports_lending.services.errors import BusinessRuleViolation, InputValidationError


LOW_STOCK_RATIO = 0.2
MAX_IMAGES_PER_UPLOAD = 5
EQUIPMENT_SORT_COLUMNS = {
    "createdAt": Equipment.CreatedDate,
    "name": Equipment.Name,
    "category": Equipment.Category,
    "brand": Equipment.Brand,
    "available": Equipment.QuantityAvailable,
}
_SPEC_COLUMNS = {
    "size": "Size",
    "weight": "Weight",
    "material": "Material",
    "color": "Color",
    "condition": "Condition",
}
_SCALAR_FIELDS = {
    "name": "Name",
    "category": "Category",
    "subcategory": "Subcategory",
    "brand": "Brand",
    "model": "Model",
    "description": "Description",
    "isActive": "IsActive",
    "isNewArrival": "IsNewArrival",
    "barcode": "Barcode",
}


def availability_status(equipment: Equipment) -> str:
    available = int(equipment.QuantityAvailable or 0)
    total = int(equipment.QuantityTotal or 0)
    if available == 0:
        return "Out of Stock"
    if available <= total * LOW_STOCK_RATIO:
        return "Low Stock"
    return "Available"


def condition_percentage(equipment: Equipment) -> int:
    total = int(equipment.QuantityTotal or 0)
    if total <= 0:
        return 0
    return round((total - int(equipment.QuantityDamaged or 0)) / total * 100)


def is_available(equipment: Equipment, quantity: int = 1) -> bool:
    return bool(equipment.IsActive) and int(equipment.QuantityAvailable or 0) >= int(quantity)


def quantities_consistent(total: int, available: int, borrowed: int, damaged: int) -> bool:
    if min(total, available, borrowed, damaged) < 0:
        return False
    return available + borrowed + damaged == total


def serialize_equipment(equipment: Equipment) -> dict[str, Any]:
    return {
        "id": equipment.EquipmentID,
        "name": equipment.Name,
        "category": equipment.Category,
        "subcategory": equipment.Subcategory,
        "brand": equipment.Brand,
        "model": equipment.Model,
        "description": equipment.Description,
        "specifications": {
            "size": equipment.Size,
            "weight": equipment.Weight,
            "material": equipment.Material,
            "color": equipment.Color,
            "condition": equipment.Condition,
        },
        "quantity": {
            "total": equipment.QuantityTotal,
            "available": equipment.QuantityAvailable,
            "borrowed": equipment.QuantityBorrowed,
            "damaged": equipment.QuantityDamaged,
        },
        "images": list(equipment.Images or []),
        "location": equipment.Location or {},
        "purchaseInfo": equipment.PurchaseInfo or {},
        "tags": list(equipment.Tags or []),
        "barcode": equipment.Barcode,
        "isActive": bool(equipment.IsActive),
        "isNewArrival": bool(equipment.IsNewArrival),
        "usage": {
            "totalBorrows": equipment.UsageTotalBorrows or 0,
            "totalDays": equipment.UsageTotalDays or 0,
            "lastBorrowed": equipment.UsageLastBorrowed,
        },
        "availabilityStatus": availability_status(equipment),
        "conditionPercentage": condition_percentage(equipment),
        "createdBy": equipment.CreatedBy,
        "createdAt": equipment.CreatedDate,
        "updatedAt": equipment.UpdatedDate,
    }


def borrow_equipment(db: Session, equipment: Equipment, quantity: int) -> None:
    """Move `quantity` units from available to borrowed.

    A single conditional UPDATE; concurrent callers cannot both pass the
    availability check. Does not commit.
    """
    now = utc_now()
    result = db.execute(
        update(Equipment)
        .where(Equipment.EquipmentID == equipment.EquipmentID)
        .where(Equipment.IsActive.is_(True))
        .where(Equipment.QuantityAvailable >= quantity)
        .values(
            QuantityAvailable=Equipment.QuantityAvailable - quantity,
            QuantityBorrowed=Equipment.QuantityBorrowed + quantity,
            UsageTotalBorrows=Equipment.UsageTotalBorrows + quantity,
            UsageLastBorrowed=now,
            UpdatedDate=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BusinessRuleViolation("Equipment not available in requested quantity")
    db.refresh(equipment)


def return_equipment(db: Session, equipment: Equipment, quantity: int, damaged: bool = False, days: int = 0) -> None:
    """Move `quantity` borrowed units back to available, or to damaged. Does not commit."""
    values: dict[str, Any] = {
        "QuantityBorrowed": Equipment.QuantityBorrowed - quantity,
        "UsageTotalDays": Equipment.UsageTotalDays + max(int(days), 0),
        "UpdatedDate": utc_now(),
    }
    if damaged:
        values["QuantityDamaged"] = Equipment.QuantityDamaged + quantity
    else:
        values["QuantityAvailable"] = Equipment.QuantityAvailable + quantity
    result = db.execute(
        update(Equipment)
        .where(Equipment.EquipmentID == equipment.EquipmentID)
        .where(Equipment.QuantityBorrowed >= quantity)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BusinessRuleViolation("Cannot return more equipment than is currently borrowed")
    db.refresh(equipment)


def _apply_specifications(equipment: Equipment, specifications: dict[str, Any] | None) -> None:
    for field, value in (specifications or {}).items():
        column = _SPEC_COLUMNS.get(field)
        if column:
            setattr(equipment, column, value)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def build_equipment(payload: EquipmentCreate, created_by: int | None) -> Equipment:
    quantity = payload.quantity
    total = quantity.total
    if total is None or total < 1:
        raise InputValidationError("Total quantity must be at least 1", errors=[{"field": "quantity.total", "message": "must be at least 1"}])
    available = quantity.available if quantity.available is not None else total
    borrowed = quantity.borrowed or 0
    damaged = quantity.damaged or 0
    if borrowed or damaged or available != total:
        raise InputValidationError(
            "New equipment must start with every unit available",
            errors=[{"field": "quantity", "message": "available must equal total; borrowed and damaged must be 0"}],
        )

    data = payload.model_dump(exclude={"notifyStudents"})
    equipment = Equipment(
        QuantityTotal=total,
        QuantityAvailable=total,
        QuantityBorrowed=0,
        QuantityDamaged=0,
        Images=_jsonable(data.get("images") or []),
        Location=_jsonable(data.get("location")),
        PurchaseInfo=_jsonable(data.get("purchaseInfo")),
        Tags=list(data.get("tags") or []),
        IsActive=True,
        CreatedBy=created_by,
    )
    for field, column in _SCALAR_FIELDS.items():
        if field in data and field != "isActive":
            setattr(equipment, column, data[field])
    if equipment.Barcode is not None and not equipment.Barcode.strip():
        equipment.Barcode = None
    _apply_specifications(equipment, data.get("specifications"))
    if not equipment.Condition:
        equipment.Condition = "Good"
    return equipment


def apply_equipment_update(equipment: Equipment, payload: EquipmentUpdate) -> None:
    data = payload.model_dump(exclude_unset=True)
    for field, column in _SCALAR_FIELDS.items():
        if field in data and data[field] is not None:
            setattr(equipment, column, data[field])
    if "specifications" in data:
        _apply_specifications(equipment, data["specifications"])
    for field, column in (("images", "Images"), ("location", "Location"), ("purchaseInfo", "PurchaseInfo"), ("tags", "Tags")):
        if field in data and data[field] is not None:
            setattr(equipment, column, _jsonable(data[field]))

    if data.get("quantity"):
        merged = {
            "total": equipment.QuantityTotal,
            "available": equipment.QuantityAvailable,
            "borrowed": equipment.QuantityBorrowed,
            "damaged": equipment.QuantityDamaged,
        }
        merged.update({key: value for key, value in data["quantity"].items() if value is not None})
        if not quantities_consistent(merged["total"], merged["available"], merged["borrowed"], merged["damaged"]):
            raise InputValidationError(
                "Quantity fields must satisfy available + borrowed + damaged == total",
                errors=[{"field": "quantity", "message": "available + borrowed + damaged must equal total"}],
            )
        equipment.QuantityTotal = merged["total"]
        equipment.QuantityAvailable = merged["available"]
        equipment.QuantityBorrowed = merged["borrowed"]
        equipment.QuantityDamaged = merged["damaged"]


def append_images(equipment: Equipment, urls: list[str]) -> None:
    images = list(equipment.Images or [])
    has_primary = any(image.get("isPrimary") for image in images)
    for url in urls:
        images.append({"url": url, "alt": equipment.Name, "isPrimary": not has_primary})
        has_primary = True
    # Reassign so the JSON column is flagged dirty.
    equipment.Images = images


def build_equipment_query(
    *,
    category: str | None = None,
    search: str | None = None,
    available_only: bool = False,
    new_arrivals: bool = False,
    include_inactive: bool = False,
):
    stmt = select(Equipment)
    if not include_inactive:
        stmt = stmt.where(Equipment.IsActive.is_(True))
    if category:
        stmt = stmt.where(Equipment.Category == category)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Equipment.Name).like(pattern),
                func.lower(func.coalesce(Equipment.Brand, "")).like(pattern),
                func.lower(func.coalesce(Equipment.Description, "")).like(pattern),
            )
        )
    if available_only:
        stmt = stmt.where(Equipment.QuantityAvailable > 0)
    if new_arrivals:
        stmt = stmt.where(Equipment.IsNewArrival.is_(True))
    return stmt


def list_equipment(
    db: Session,
    *,
    page: int = 1,
    limit: int = 12,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    **filters: Any,
) -> tuple[list[Equipment], int]:
    stmt = build_equipment_query(**filters)
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    column = EQUIPMENT_SORT_COLUMNS.get(sort_by, Equipment.CreatedDate)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    rows = db.execute(
        stmt.order_by(ordering, Equipment.EquipmentID.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def list_categories(db: Session) -> list[str]:
    rows = db.execute(
        select(Equipment.Category).where(Equipment.IsActive.is_(True)).distinct().order_by(Equipment.Category)
    ).scalars().all()
    return [row for row in rows if row]


def equipment_overview(db: Session) -> dict[str, Any]:
    active = Equipment.IsActive.is_(True)
    totals = db.execute(
        select(
            func.count(Equipment.EquipmentID),
            func.coalesce(func.sum(Equipment.QuantityTotal), 0),
            func.coalesce(func.sum(Equipment.QuantityAvailable), 0),
            func.coalesce(func.sum(Equipment.QuantityBorrowed), 0),
            func.coalesce(func.sum(Equipment.QuantityDamaged), 0),
        ).where(active)
    ).one()
    new_arrivals = db.execute(
        select(func.count(Equipment.EquipmentID)).where(and_(active, Equipment.IsNewArrival.is_(True)))
    ).scalar() or 0
    out_of_stock = db.execute(
        select(func.count(Equipment.EquipmentID)).where(and_(active, Equipment.QuantityAvailable == 0))
    ).scalar() or 0
    by_category = db.execute(
        select(
            Equipment.Category,
            func.count(Equipment.EquipmentID),
            func.coalesce(func.sum(Equipment.QuantityTotal), 0),
            func.coalesce(func.sum(Equipment.QuantityAvailable), 0),
        )
        .where(active)
        .group_by(Equipment.Category)
        .order_by(func.count(Equipment.EquipmentID).desc())
    ).all()
    return {
        "totalItems": int(totals[0] or 0),
        "totalQuantity": int(totals[1] or 0),
        "availableQuantity": int(totals[2] or 0),
        "borrowedQuantity": int(totals[3] or 0),
        "damagedQuantity": int(totals[4] or 0),
        "newArrivals": int(new_arrivals),
        "outOfStock": int(out_of_stock),
        "byCategory": [
            {"category": row[0], "count": int(row[1]), "totalQuantity": int(row[2]), "availableQuantity": int(row[3])}
            for row in by_category
        ],
    }
