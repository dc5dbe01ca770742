"""
Lead and account event endpoints - called by the CRM side of the product.

- POST /api/v1/leads/{lead_id}/created      - start outreach for a new lead
- POST /api/v1/leads/{lead_id}/status       - manual status (qualified, appointment_set, converted)
- POST /api/v1/leads/{lead_id}/appointment  - appointment lifecycle event
- POST /api/v1/leads/{lead_id}/call         - on-demand call
- POST /api/v1/accounts/{account_id}/plan   - subscription plan change
- GET  /api/v1/accounts/{account_id}/calling-stats - quarter and day call counts
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.models.lead import Lead
from src.schemas.api_responses import (
    AppointmentEventRequest,
    CallingStats,
    LeadCreatedResponse,
    LeadStatusResponse,
    ManualCallResult,
    ManualStatusRequest,
    PlanChangeRequest,
    PlanChangeResponse,
)
from src.services.engagement import initiate_manual_call, on_lead_created
from src.services.gateway import CommunicationGateway, get_gateway
from src.services.lead_status import set_manual_status, update_status_for_appointment
from src.services.plan_limits import handle_subscription_downgrade
from src.services.reporting import get_calling_stats
from src.utils.locks import LockTimeoutError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["leads"])


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label} ID format")


@router.post("/leads/{lead_id}/created", response_model=LeadCreatedResponse)
async def lead_created(
    lead_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Quota check, then the new-lead call funnel (or the first follow-up message)."""
    lead_uuid = _parse_uuid(lead_id, "lead")
    try:
        result = await on_lead_created(db, lead_uuid)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Lead is being processed, retry shortly")
    return LeadCreatedResponse(**result)


@router.post("/leads/{lead_id}/status", response_model=LeadStatusResponse)
async def lead_manual_status(
    lead_id: str,
    payload: ManualStatusRequest,
    db: AsyncSession = Depends(get_db),
):
    """Apply a manual status. Converted leads are terminal and stay converted."""
    lead_uuid = _parse_uuid(lead_id, "lead")
    if not await db.get(Lead, lead_uuid):
        raise HTTPException(status_code=404, detail="Lead not found")
    try:
        lead = await set_manual_status(db, lead_uuid, payload.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return LeadStatusResponse(lead_id=str(lead.id), status=lead.status)


@router.post("/leads/{lead_id}/appointment", response_model=LeadStatusResponse)
async def lead_appointment_event(
    lead_id: str,
    payload: AppointmentEventRequest,
    db: AsyncSession = Depends(get_db),
):
    """Appointment scheduled -> appointment_set, completed -> converted. Other events are no-ops."""
    lead_uuid = _parse_uuid(lead_id, "lead")
    lead = await db.get(Lead, lead_uuid)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    updated = await update_status_for_appointment(db, lead_uuid, payload.appointment_status)
    return LeadStatusResponse(lead_id=str(lead.id), status=(updated or lead).status)


@router.post("/leads/{lead_id}/call", response_model=ManualCallResult)
async def lead_manual_call(
    lead_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: CommunicationGateway = Depends(get_gateway),
):
    """Call the lead now. Gate refusals and placement failures return success=false."""
    lead_uuid = _parse_uuid(lead_id, "lead")
    try:
        return await initiate_manual_call(db, lead_uuid, gateway)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Lead is being processed, retry shortly")


@router.post("/accounts/{account_id}/plan", response_model=PlanChangeResponse)
async def account_plan_change(
    account_id: str,
    payload: PlanChangeRequest,
    db: AsyncSession = Depends(get_db),
):
    """Record a plan change; over-limit downgrades start a grace period."""
    account_uuid = _parse_uuid(account_id, "account")
    try:
        result = await handle_subscription_downgrade(db, account_uuid, payload.plan)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return PlanChangeResponse(
        account_id=str(result.account_id),
        old_plan=result.old_plan,
        new_plan=result.new_plan,
        lead_limit=result.lead_limit,
        active_leads=result.active_leads,
        excess_leads=result.excess_leads,
        grace_period_until=result.grace_period_until,
    )


@router.get("/accounts/{account_id}/calling-stats", response_model=CallingStats)
async def account_calling_stats(
    account_id: str,
    db: AsyncSession = Depends(get_db),
):
    account_uuid = _parse_uuid(account_id, "account")
    try:
        return await get_calling_stats(db, account_uuid)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
