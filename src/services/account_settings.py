"""
Account settings lookup - resolves the communication policy stored on an account.
"""
import logging
import uuid
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.account import Account
from src.schemas.account_policy import AccountCommunicationPolicy

logger = logging.getLogger(__name__)


def policy_for(account: Optional[Account]) -> AccountCommunicationPolicy:
    """
    Parse an account's policy JSON.
    A missing account or a malformed policy falls back to defaults; outreach
    keeps running on conservative settings rather than stopping.
    """
    if account is None:
        return AccountCommunicationPolicy()
    try:
        return AccountCommunicationPolicy.from_raw(account.policy)
    except ValidationError as e:
        logger.warning(
            "Invalid communication policy for account %s, using defaults: %s",
            str(account.id)[:8], str(e),
            extra={"account_id": str(account.id)},
        )
        return AccountCommunicationPolicy()


async def get_account_policy(
    db: AsyncSession, account_id: uuid.UUID
) -> AccountCommunicationPolicy:
    account = await db.get(Account, account_id)
    return policy_for(account)
