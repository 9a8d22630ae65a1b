from pydantic import BaseModel, ConfigDict, Field


class AdminLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class StudentLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    studentId: str = Field(min_length=1)
    phoneNumber: str = Field(min_length=1)


class VerifyOtpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    studentId: str = Field(min_length=1)
    phoneNumber: str = Field(min_length=1)
    otp: str = Field(min_length=6, max_length=6, pattern=r"^\d{6}$")


class StudentRegistration(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    studentId: str = Field(min_length=1, max_length=30)
    fullName: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phoneNumber: str = Field(min_length=7, max_length=30)
    department: str = Field(min_length=1, max_length=100)
    year: int = Field(ge=1, le=6)
    semester: int = Field(ge=1, le=8)
