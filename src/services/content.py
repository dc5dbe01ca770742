"""
Content generation contract.

Message and call-script text is opaque to the orchestrator. The production
system plugs an AI generator in here; TemplateContentGenerator keeps the
dispatcher working end to end without one.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from src.models.lead import Lead

logger = logging.getLogger(__name__)


class ContentGenerator(ABC):
    @abstractmethod
    async def render_message(
        self,
        lead: Lead,
        trigger: str,
        call_fallback_type: Optional[str] = None,
    ) -> str:
        ...

    @abstractmethod
    async def render_call_script(self, lead: Lead, call_type: str) -> str:
        ...


MESSAGE_TEMPLATES = {
    "follow_up": "Hi {name}, just checking in. Is there anything I can help you with?",
    "auto_reply": "Thanks {name}, got your message. I'll get back to you shortly.",
    "voicemail_2calls": "Hi {name}, I left you a voicemail earlier. Text me back whenever suits you.",
    "missed_2calls": "Hi {name}, I tried calling a couple of times. Is now a good time to text instead?",
}

CALL_SCRIPTS = {
    "new_lead": "Hi {name}, thanks for reaching out. I'm calling to see how I can help.",
    "follow_up": "Hi {name}, I'm following up on our last conversation.",
    "reactivation": "Hi {name}, it's been a while. I wanted to see if you're still looking.",
}


def _first_name(lead: Lead) -> str:
    if lead.name and lead.name.strip():
        return lead.name.strip().split()[0]
    return "there"


class TemplateContentGenerator(ContentGenerator):
    """Fixed templates keyed by trigger / fallback type / call type."""

    async def render_message(
        self,
        lead: Lead,
        trigger: str,
        call_fallback_type: Optional[str] = None,
    ) -> str:
        key = call_fallback_type if trigger == "call_fallback" and call_fallback_type else trigger
        template = MESSAGE_TEMPLATES.get(key)
        if template is None:
            logger.warning("No message template for %r, using follow_up", key)
            template = MESSAGE_TEMPLATES["follow_up"]
        return template.format(name=_first_name(lead))

    async def render_call_script(self, lead: Lead, call_type: str) -> str:
        template = CALL_SCRIPTS.get(call_type, CALL_SCRIPTS["follow_up"])
        return template.format(name=_first_name(lead))


_generator: Optional[ContentGenerator] = None


def get_content_generator() -> ContentGenerator:
    global _generator
    if _generator is None:
        _generator = TemplateContentGenerator()
    return _generator
