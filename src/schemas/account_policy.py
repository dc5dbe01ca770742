"""
Account communication policy - the per-account outreach configuration stored as JSONB.
Read-only to the orchestrator; written by the settings collaborator.
"""
from pydantic import BaseModel, Field, field_validator, model_validator

from src.utils.timezone import WEEKDAY_NAMES


class FollowUpIntervals(BaseModel):
    """Days to wait before the next follow-up, per lead status."""
    new: int = Field(default=2, ge=0)
    in_conversation: int = Field(default=3, ge=0)
    qualified: int = Field(default=5, ge=0)
    appointment_set: int = Field(default=5, ge=0)
    inactive: int = Field(default=30, ge=0)


class CallingHours(BaseModel):
    start_hour: int = Field(default=11, ge=0, le=23)
    end_hour: int = Field(default=19, ge=1, le=24)
    days: list[str] = Field(default_factory=lambda: list(WEEKDAY_NAMES))

    @field_validator("days")
    @classmethod
    def _normalize_days(cls, value: list[str]) -> list[str]:
        days = [d.strip().lower() for d in value]
        unknown = [d for d in days if d not in WEEKDAY_NAMES]
        if unknown:
            raise ValueError(f"Unknown weekday(s): {', '.join(unknown)}")
        return days

    @model_validator(mode="after")
    def _check_window(self) -> "CallingHours":
        if self.end_hour <= self.start_hour:
            raise ValueError("end_hour must be after start_hour")
        return self


class AccountCommunicationPolicy(BaseModel):
    """Complete outreach policy for one account."""
    follow_up_intervals: FollowUpIntervals = Field(default_factory=FollowUpIntervals)
    calling_hours: CallingHours = Field(default_factory=CallingHours)
    voice_calling_enabled: bool = True
    quarterly_call_limit: int = Field(default=1, ge=0)
    call_retry_attempts: int = Field(default=2, ge=1)
    min_hours_between_calls: float = Field(default=2, ge=0)
    new_lead_min_hours_between_calls: float = Field(default=24, ge=0)

    @classmethod
    def from_raw(cls, raw: dict | None) -> "AccountCommunicationPolicy":
        """Build from the JSONB column; missing keys fall back to defaults."""
        return cls(**raw) if raw else cls()
