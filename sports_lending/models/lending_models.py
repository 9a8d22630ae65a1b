from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sports_lending.db.base import Base
from sports_lending.services.clock import utc_now


EQUIPMENT_CATEGORIES = (
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
)
EQUIPMENT_CONDITIONS = ("New", "Excellent", "Good", "Fair", "Poor")

REQUEST_STATUSES = ("pending", "approved", "rejected", "borrowed", "returned", "overdue")
OPEN_REQUEST_STATUSES = ("pending", "approved")
HISTORY_ACTIONS = ("created", "approved", "rejected", "borrowed", "returned", "extended", "damaged")

ADMIN_ROLES = ("admin", "super_admin")
ADMIN_PERMISSIONS = {
    "canManageEquipment": "CanManageEquipment",
    "canManageRequests": "CanManageRequests",
    "canManageStudents": "CanManageStudents",
    "canSendNotifications": "CanSendNotifications",
    "canViewReports": "CanViewReports",
}

NOTIFICATION_TYPES = ("info", "success", "warning", "error", "new_equipment", "request_update", "system_alert")
NOTIFICATION_CATEGORIES = ("general", "equipment", "request", "system", "maintenance")
NOTIFICATION_PRIORITIES = ("low", "medium", "high", "urgent")
USER_MODELS = ("Student", "Admin")


class Equipment(Base):
    __tablename__ = "Equipment"
    __table_args__ = (
        CheckConstraint("QuantityTotal >= 0", name="CK_Equipment_Total"),
        CheckConstraint("QuantityAvailable >= 0", name="CK_Equipment_Available"),
        CheckConstraint("QuantityBorrowed >= 0", name="CK_Equipment_Borrowed"),
        CheckConstraint("QuantityDamaged >= 0", name="CK_Equipment_Damaged"),
    )

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(100), nullable=False)
    Category = Column(String(50), nullable=False, index=True)
    Subcategory = Column(String(100))
    Brand = Column(String(100))
    Model = Column(String(100))
    Description = Column(String(500))
    Size = Column(String(50))
    Weight = Column(String(50))
    Material = Column(String(100))
    Color = Column(String(50))
    Condition = Column(String(20), default="Good")
    QuantityTotal = Column(Integer, nullable=False, default=0)
    QuantityAvailable = Column(Integer, nullable=False, default=0)
    QuantityBorrowed = Column(Integer, nullable=False, default=0)
    QuantityDamaged = Column(Integer, nullable=False, default=0)
    Images = Column(JSON)
    Location = Column(JSON)
    PurchaseInfo = Column(JSON)
    Tags = Column(JSON)
    Barcode = Column(String(100), unique=True)
    IsActive = Column(Boolean, nullable=False, default=True)
    IsNewArrival = Column(Boolean, nullable=False, default=False)
    UsageTotalBorrows = Column(Integer, nullable=False, default=0)
    UsageTotalDays = Column(Integer, nullable=False, default=0)
    UsageLastBorrowed = Column(DateTime)
    CreatedBy = Column(Integer, ForeignKey("Admins.AdminID"))
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now, onupdate=utc_now)

    Requests = relationship("BorrowRequest", back_populates="Equipment")


class Admin(Base):
    __tablename__ = "Admins"

    AdminID = Column(Integer, primary_key=True)
    Username = Column(String(30), nullable=False, unique=True)
    PasswordHash = Column(String(128), nullable=False)
    PasswordSalt = Column(String(64), nullable=False)
    Email = Column(String(255), nullable=False, unique=True)
    FullName = Column(String(255), nullable=False)
    Role = Column(String(20), nullable=False, default="admin")
    IsActive = Column(Boolean, nullable=False, default=True)
    LastLogin = Column(DateTime)
    CanManageEquipment = Column(Boolean, nullable=False, default=True)
    CanManageRequests = Column(Boolean, nullable=False, default=True)
    CanManageStudents = Column(Boolean, nullable=False, default=True)
    CanSendNotifications = Column(Boolean, nullable=False, default=True)
    CanViewReports = Column(Boolean, nullable=False, default=True)
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now, onupdate=utc_now)


class Student(Base):
    __tablename__ = "Students"

    StudentID = Column(Integer, primary_key=True)
    StudentNumber = Column(String(30), nullable=False, unique=True)
    FullName = Column(String(255), nullable=False)
    Email = Column(String(255), nullable=False, unique=True)
    PhoneNumber = Column(String(30), nullable=False, unique=True)
    Department = Column(String(100), nullable=False, index=True)
    Year = Column(Integer, nullable=False)
    Semester = Column(Integer, nullable=False)
    IdCardImage = Column(String(500), nullable=False)
    IsVerified = Column(Boolean, nullable=False, default=False)
    OtpCode = Column(String(6))
    OtpExpiresAt = Column(DateTime)
    OtpAttempts = Column(Integer, nullable=False, default=0)
    IsActive = Column(Boolean, nullable=False, default=True)
    LastLogin = Column(DateTime)
    ProfileImage = Column(String(500))
    Address = Column(JSON)
    EmergencyContact = Column(JSON)
    Preferences = Column(JSON)
    TotalRequests = Column(Integer, nullable=False, default=0)
    ApprovedRequests = Column(Integer, nullable=False, default=0)
    RejectedRequests = Column(Integer, nullable=False, default=0)
    TotalEquipmentBorrowed = Column(Integer, nullable=False, default=0)
    TotalDaysBorrowed = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now, onupdate=utc_now)

    Requests = relationship("BorrowRequest", back_populates="Student")


class BorrowRequest(Base):
    __tablename__ = "Requests"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="CK_Requests_Quantity"),
    )

    RequestID = Column(Integer, primary_key=True)
    StudentID = Column(Integer, ForeignKey("Students.StudentID"), nullable=False, index=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    RequestDate = Column(DateTime, nullable=False, default=utc_now)
    BorrowDate = Column(DateTime, nullable=False)
    ReturnDate = Column(DateTime, nullable=False)
    ActualReturnDate = Column(DateTime)
    Status = Column(String(20), nullable=False, default="pending", index=True)
    ApprovedBy = Column(Integer, ForeignKey("Admins.AdminID"))
    ApprovedAt = Column(DateTime)
    RejectedBy = Column(Integer, ForeignKey("Admins.AdminID"))
    RejectedAt = Column(DateTime)
    RejectionReason = Column(String(200))
    Purpose = Column(String(200), nullable=False)
    Location = Column(String(200), nullable=False)
    SpecialRequirements = Column(String(300))
    AdminNotes = Column(String(500))
    StudentNotes = Column(String(500))
    IsUrgent = Column(Boolean, nullable=False, default=False)
    IsDamaged = Column(Boolean, nullable=False, default=False)
    DamageDescription = Column(String(500))
    DamageReportedAt = Column(DateTime)
    DamageReportedBy = Column(Integer, ForeignKey("Admins.AdminID"))
    CreatedDate = Column(DateTime, default=utc_now)
    UpdatedDate = Column(DateTime, default=utc_now, onupdate=utc_now)

    Student = relationship("Student", back_populates="Requests")
    Equipment = relationship("Equipment", back_populates="Requests")
    History = relationship(
        "RequestHistory",
        back_populates="Request",
        cascade="all, delete-orphan",
        order_by="RequestHistory.HistoryID",
    )
    Extensions = relationship(
        "RequestExtension",
        back_populates="Request",
        cascade="all, delete-orphan",
        order_by="RequestExtension.ExtensionID",
    )


# Storage-level guard for the one-open-request-per-pair rule.
Index(
    "UX_Requests_OpenPair",
    BorrowRequest.StudentID,
    BorrowRequest.EquipmentID,
    unique=True,
    sqlite_where=BorrowRequest.Status.in_(OPEN_REQUEST_STATUSES),
    postgresql_where=BorrowRequest.Status.in_(OPEN_REQUEST_STATUSES),
    mssql_where=BorrowRequest.Status.in_(OPEN_REQUEST_STATUSES),
)


class RequestHistory(Base):
    __tablename__ = "RequestHistory"

    HistoryID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("Requests.RequestID"), nullable=False, index=True)
    Action = Column(String(20), nullable=False)
    Timestamp = Column(DateTime, nullable=False, default=utc_now)
    ActorType = Column(String(10))
    ActorID = Column(Integer)
    Details = Column(String(500))

    Request = relationship("BorrowRequest", back_populates="History")


class RequestExtension(Base):
    __tablename__ = "RequestExtensions"

    ExtensionID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("Requests.RequestID"), nullable=False, index=True)
    RequestedDate = Column(DateTime, nullable=False, default=utc_now)
    ApprovedDate = Column(DateTime)
    ApprovedBy = Column(Integer, ForeignKey("Admins.AdminID"))
    PreviousReturnDate = Column(DateTime)
    NewReturnDate = Column(DateTime, nullable=False)
    Reason = Column(String(300))

    Request = relationship("BorrowRequest", back_populates="Extensions")


class Notification(Base):
    __tablename__ = "Notifications"

    NotificationID = Column(Integer, primary_key=True)
    Title = Column(String(100), nullable=False)
    Message = Column(String(500), nullable=False)
    Type = Column(String(20), nullable=False, default="info")
    Category = Column(String(20), nullable=False, default="general")
    Priority = Column(String(10), nullable=False, default="medium")
    RecipientsAll = Column(Boolean, nullable=False, default=False)
    SentAt = Column(DateTime, nullable=False, default=utc_now, index=True)
    ExpiresAt = Column(DateTime)
    IsActive = Column(Boolean, nullable=False, default=True)
    ActionUrl = Column(String(500))
    ActionText = Column(String(100))
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"))
    RequestID = Column(Integer, ForeignKey("Requests.RequestID"))
    StudentID = Column(Integer, ForeignKey("Students.StudentID"))
    CustomData = Column(JSON)
    Tags = Column(JSON)
    CreatedBy = Column(Integer, ForeignKey("Admins.AdminID"), nullable=False)
    CreatedDate = Column(DateTime, default=utc_now)

    Recipients = relationship("NotificationRecipient", back_populates="Notification", cascade="all, delete-orphan")
    Reads = relationship("NotificationRead", back_populates="Notification", cascade="all, delete-orphan")


class NotificationRecipient(Base):
    __tablename__ = "NotificationRecipients"
    __table_args__ = (
        UniqueConstraint("NotificationID", "UserID", "UserModel", name="UX_NotificationRecipients_User"),
    )

    NotificationRecipientID = Column(Integer, primary_key=True)
    NotificationID = Column(Integer, ForeignKey("Notifications.NotificationID"), nullable=False, index=True)
    UserID = Column(Integer, nullable=False)
    UserModel = Column(String(10), nullable=False)

    Notification = relationship("Notification", back_populates="Recipients")


class NotificationRead(Base):
    __tablename__ = "NotificationReads"
    __table_args__ = (
        UniqueConstraint("NotificationID", "UserID", "UserModel", name="UX_NotificationReads_User"),
    )

    NotificationReadID = Column(Integer, primary_key=True)
    NotificationID = Column(Integer, ForeignKey("Notifications.NotificationID"), nullable=False, index=True)
    UserID = Column(Integer, nullable=False)
    UserModel = Column(String(10), nullable=False)
    ReadAt = Column(DateTime, nullable=False, default=utc_now)

    Notification = relationship("Notification", back_populates="Reads")
