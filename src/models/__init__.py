"""
Database models - import all models here so metadata discovery sees every table.
"""
from src.models.account import Account
from src.models.lead import Lead
from src.models.message import Message
from src.models.call import Call
from src.models.event_log import EventLog

__all__ = [
    "Account",
    "Lead",
    "Message",
    "Call",
    "EventLog",
]
