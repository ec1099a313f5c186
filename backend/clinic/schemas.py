from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from clinic.models import AppointmentStatus, DayOfWeek, Role

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# --- auth / users ---
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str


class UserPublic(BaseModel):
    id: str
    name: Optional[str] = None
    email: str
    role: Role
    phone: Optional[str] = None
    active: bool = True

    class Config:
        from_attributes = True


class UserBrief(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    class Config:
        from_attributes = True


class ActivateRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


# --- services ---
class ServiceCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    duration: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image_url: Optional[str] = None
    is_active: bool = True


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    duration: Optional[int] = Field(None, ge=1)
    price: Optional[float] = Field(None, ge=0)
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


class ServicePublic(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    duration: int
    price: float
    image_url: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class ServiceBrief(BaseModel):
    id: str
    name: str
    duration: int
    price: float

    class Config:
        from_attributes = True


# --- therapists ---
class TherapistCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    service_ids: List[str] = []


class TherapistPublic(BaseModel):
    id: str
    name: Optional[str] = None
    email: str
    phone: Optional[str] = None
    active: bool
    services: List[ServiceBrief] = []


class TherapistServiceLink(BaseModel):
    therapist_id: str
    therapist_name: Optional[str] = None
    service_id: str
    service_name: str


# --- schedules ---
class ScheduleCreate(BaseModel):
    therapist_id: str
    service_id: str
    day_of_week: DayOfWeek
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)


class ScheduleUpdate(BaseModel):
    service_id: Optional[str] = None
    day_of_week: Optional[DayOfWeek] = None
    start_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    end_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    is_active: Optional[bool] = None


class SchedulePublic(BaseModel):
    id: str
    therapist_id: str
    service_id: str
    day_of_week: DayOfWeek
    start_time: str
    end_time: str
    is_active: bool
    therapist: Optional[UserBrief] = None
    service: Optional[ServiceBrief] = None

    class Config:
        from_attributes = True


# --- appointments ---
class PublicPatientInfo(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None


class AppointmentCreate(BaseModel):
    date: datetime
    service_ids: List[str] = Field(..., min_length=1)
    therapist_id: Optional[str] = None
    patient_id: Optional[str] = None
    patient: Optional[PublicPatientInfo] = None


class AppointmentUpdate(BaseModel):
    status: Optional[AppointmentStatus] = None
    therapist_id: Optional[str] = None
    cancel_reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_date: datetime
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class AppointmentPublic(BaseModel):
    id: str
    date: datetime
    status: AppointmentStatus
    patient_id: str
    therapist_id: Optional[str] = None
    patient: Optional[UserBrief] = None
    therapist: Optional[UserBrief] = None
    services: List[ServiceBrief] = []
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AppointmentSummary(BaseModel):
    """What an email-link holder may see."""
    id: str
    date: datetime
    status: AppointmentStatus
    therapist_name: Optional[str] = None
    services: List[str] = []


class StatusChangeResponse(BaseModel):
    message: str
    appointment: AppointmentPublic
    email_sent: Optional[bool] = None


class NoteCreate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("content must not be empty")
        return v


class NotePublic(BaseModel):
    id: str
    appointment_id: str
    therapist_id: str
    content: str
    created_at: Optional[datetime] = None
    therapist: Optional[UserBrief] = None

    class Config:
        from_attributes = True


# --- surveys ---
class SurveyCreate(BaseModel):
    satisfaction: int = Field(..., ge=1, le=5)
    comments: Optional[str] = None


class SurveyPublic(BaseModel):
    id: str
    appointment_id: str
    patient_id: str
    satisfaction: int
    comments: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SurveyExists(BaseModel):
    exists: bool


class AdminSurveyItem(BaseModel):
    id: str
    satisfaction: int
    comments: Optional[str] = None
    created_at: Optional[datetime] = None
    appointment_id: str
    appointment_date: Optional[datetime] = None
    patient: Optional[UserBrief] = None
    therapist: Optional[UserBrief] = None


class AdminSurveyPage(BaseModel):
    items: List[AdminSurveyItem]
    total: int
    page: int
    page_size: int


# --- patients ---
class PatientPage(BaseModel):
    items: List[UserPublic]
    total: int
    page: int
    page_size: int


class HistoryStats(BaseModel):
    total_appointments: int
    services_received: int
    first_visit: Optional[datetime] = None
    last_visit: Optional[datetime] = None


class HistoryEntry(BaseModel):
    appointment: AppointmentPublic
    notes: List[NotePublic] = []


class PatientHistory(BaseModel):
    patient: UserBrief
    appointments: List[HistoryEntry]
    stats: HistoryStats


# --- medical access ---
class MedicalAccessResponse(BaseModel):
    authorized: bool


GroupBy = Literal["day", "week", "month"]
