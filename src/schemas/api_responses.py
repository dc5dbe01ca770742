"""
Request and response schemas for the lead and account endpoints.
"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


class LeadCreatedResponse(BaseModel):
    status: str
    lead_id: str
    contact_id: Optional[str] = None


class ManualStatusRequest(BaseModel):
    status: Literal["qualified", "appointment_set", "converted"]


class AppointmentEventRequest(BaseModel):
    appointment_status: str


class LeadStatusResponse(BaseModel):
    lead_id: str
    status: str


class PlanChangeRequest(BaseModel):
    plan: Literal["free", "pro", "unlimited"]


class PlanChangeResponse(BaseModel):
    account_id: str
    old_plan: str
    new_plan: str
    lead_limit: Optional[int] = None
    active_leads: int
    excess_leads: int
    grace_period_until: Optional[datetime] = None


class ManualCallResult(BaseModel):
    success: bool
    message: str
    lead_id: str
    call_id: Optional[str] = None
    call_type: Optional[str] = None
    rule: Optional[str] = None


class CallTypeCounts(BaseModel):
    new_lead: int = 0
    follow_up: int = 0
    reactivation: int = 0


class CallingStats(BaseModel):
    account_id: str
    quarter_total: int = 0
    quarter_completed: int = 0
    today_total: int = 0
    today_completed: int = 0
    call_types: CallTypeCounts = Field(default_factory=CallTypeCounts)
