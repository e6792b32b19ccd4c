"""
MessageRenderer Service
Builds the review request SMS body from the account's chosen tone
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from jinja2 import Environment
import structlog

logger = structlog.get_logger(__name__)


class ToneKind(str, Enum):
    friendly = "friendly"
    professional = "professional"
    grateful = "grateful"
    custom = "custom"


@dataclass(frozen=True)
class MessageTone:
    """
    Closed set of message styles: Friendly, Professional, Grateful or Custom(template).

    Only Custom carries a template. Use parse() to build one from the raw
    account fields instead of constructing it directly.
    """
    kind: ToneKind
    template: Optional[str] = None

    @classmethod
    def parse(cls, tone: Optional[str], custom_message: Optional[str] = None) -> "MessageTone":
        """
        Map stored account settings to a tone.

        Unknown tone names, and custom without a usable template, become Friendly.
        """
        try:
            kind = ToneKind((tone or "").strip().lower())
        except ValueError:
            logger.info("unknown_message_tone", tone=tone, fallback="friendly")
            return FRIENDLY

        if kind is ToneKind.custom:
            if custom_message and custom_message.strip():
                return cls(ToneKind.custom, custom_message)
            return FRIENDLY

        return cls(kind)


FRIENDLY = MessageTone(ToneKind.friendly)

# Built-in tone templates
_TONE_TEMPLATES = {
    ToneKind.friendly: (
        "Hi {{ first_name }}! Thanks for shopping at {{ business_name }}! "
        "We'd love to hear about your experience: {{ review_link }}"
    ),
    ToneKind.professional: (
        "Thank you for your purchase at {{ business_name }}. "
        "We value your feedback: {{ review_link }}"
    ),
    ToneKind.grateful: (
        "Thank you so much for supporting {{ business_name }}! "
        "Your review would mean the world to us: {{ review_link }}"
    ),
}

# Custom template placeholders, matched case-insensitively
_CUSTOMER_NAME = re.compile(r"\{\{\s*CustomerName\s*\}\}", re.IGNORECASE)
_BUSINESS_NAME = re.compile(r"\{\{\s*BusinessName\s*\}\}", re.IGNORECASE)
_REVIEW_LINK = re.compile(r"\{\{\s*ReviewLink\s*\}\}", re.IGNORECASE)


def first_name_of(customer_name: Optional[str]) -> str:
    """First word of the customer's name, or "there" when there is none."""
    parts = (customer_name or "").split()
    return parts[0] if parts else "there"


class MessageRenderer:
    """
    Renders review request messages.

    Built-in tones are Jinja2 templates. Account-supplied custom templates use
    {{CustomerName}}, {{BusinessName}} and {{ReviewLink}} placeholders and are
    substituted literally, never evaluated as Jinja2.
    """

    def __init__(self):
        self.env = Environment(
            autoescape=False,  # Plain text SMS
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._templates = {
            kind: self.env.from_string(source)
            for kind, source in _TONE_TEMPLATES.items()
        }

    def render(
        self,
        tone: MessageTone,
        customer_name: Optional[str],
        business_name: str,
        review_link: str
    ) -> str:
        """
        Render the SMS body for one customer.

        Args:
            tone: Parsed message tone
            customer_name: Full customer name (only the first word is used)
            business_name: Account display name
            review_link: Review destination URL

        Returns:
            Message body. Always contains review_link.
        """
        first_name = first_name_of(customer_name)

        if tone.kind is ToneKind.custom:
            body = self._render_custom(tone.template, first_name, business_name, review_link)
        else:
            body = self._templates[tone.kind].render(
                first_name=first_name,
                business_name=business_name,
                review_link=review_link,
            )

        logger.debug("sms_message_rendered", tone=tone.kind.value, length=len(body))
        return body

    @staticmethod
    def _render_custom(template: str, first_name: str, business_name: str, review_link: str) -> str:
        body = _CUSTOMER_NAME.sub(lambda _: first_name, template)
        body = _BUSINESS_NAME.sub(lambda _: business_name, body)
        has_link_placeholder = bool(_REVIEW_LINK.search(body))
        body = _REVIEW_LINK.sub(lambda _: review_link, body)

        if not has_link_placeholder and review_link not in body:
            body = f"{body} {review_link}"
        return body
