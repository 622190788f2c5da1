"""
Outbound transport
Delivers flow messages to the conversation (UAZAPI WhatsApp reference adapter)
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List
import httpx

from ..core.config import settings
from ..core.exceptions import DeliveryError
from ..models.events import InteractiveKind, InteractivePayload, OutboundMessage

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReceipt:
    """Acknowledgement of a delivered message"""
    conversation_id: str
    message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "sent_at": self.sent_at.isoformat(),
        }


class Transport(ABC):
    """Outbound delivery contract"""

    @abstractmethod
    async def send_message(
        self,
        conversation_id: str,
        content: str,
        interactive: Optional[InteractivePayload] = None
    ) -> DeliveryReceipt:
        """
        Deliver one message.

        Raises:
            DeliveryError: if the message could not be delivered
        """


class RecordingTransport(Transport):
    """
    Keeps sent messages in memory.

    Used when no provider is configured and in tests; ``fail_with`` makes
    every send raise DeliveryError.
    """

    def __init__(self, fail_with: Optional[str] = None):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with = fail_with

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        interactive: Optional[InteractivePayload] = None
    ) -> DeliveryReceipt:
        if self.fail_with:
            raise DeliveryError(self.fail_with)

        self.sent.append({
            "conversation_id": conversation_id,
            "message": OutboundMessage(content=content, interactive=interactive),
        })
        return DeliveryReceipt(conversation_id=conversation_id, message_id=f"local-{len(self.sent)}")

    def messages_for(self, conversation_id: str) -> List[OutboundMessage]:
        return [item["message"] for item in self.sent if item["conversation_id"] == conversation_id]


class WhatsAppTransport(Transport):
    """
    UAZAPI adapter.

    Text goes to ``/send/text``; list and button prompts go to
    ``/send/menu`` with ``choices`` entries of the form ``title|id`` (list
    rows also carry ``|description``, sections are ``[title]`` lines).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30
    ):
        self.base_url = (base_url or settings.UAZAPI_SERVER).rstrip("/")
        self.token = token or settings.UAZAPI_TOKEN
        self.http_transport = http_transport
        self.timeout = timeout

    def _get_headers(self) -> Dict[str, str]:
        """Get request headers with instance token"""
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "token": self.token or ""
        }

    @staticmethod
    def _format_number(conversation_id: str) -> str:
        """Chat id without the WhatsApp JID suffix"""
        return conversation_id.split("@", 1)[0]

    @staticmethod
    def build_menu_payload(number: str, interactive: InteractivePayload) -> Dict[str, Any]:
        """Translate an interactive prompt into a UAZAPI menu request"""
        if interactive.kind == InteractiveKind.BUTTONS:
            choices = [f"{button.title}|{button.id}" for button in interactive.buttons]
            payload: Dict[str, Any] = {"number": number, "type": "button", "text": interactive.body, "choices": choices}
        else:
            choices = []
            for section in interactive.sections:
                if section.title:
                    choices.append(f"[{section.title}]")
                for row in section.rows:
                    choices.append(
                        f"{row.title}|{row.id}|{row.description}" if row.description else f"{row.title}|{row.id}"
                    )
            text = f"*{interactive.header}*\n{interactive.body}" if interactive.header else interactive.body
            payload = {
                "number": number,
                "type": "list",
                "text": text,
                "choices": choices,
                "listButton": interactive.button_text or "Options",
            }

        if interactive.footer:
            payload["footerText"] = interactive.footer
        return payload

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        interactive: Optional[InteractivePayload] = None
    ) -> DeliveryReceipt:
        if not self.token:
            raise DeliveryError("UAZAPI token not configured")

        number = self._format_number(conversation_id)
        if interactive:
            url = f"{self.base_url}/send/menu"
            payload = self.build_menu_payload(number, interactive)
        else:
            url = f"{self.base_url}/send/text"
            payload = {"number": number, "text": content}

        try:
            async with httpx.AsyncClient(transport=self.http_transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers=self._get_headers(),
                    timeout=self.timeout
                )
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message to {conversation_id}: {e}")
            raise DeliveryError(f"Transport error: {e}") from e

        if response.status_code != 200:
            logger.error(f"UAZAPI error: {response.status_code} - {response.text}")
            raise DeliveryError(f"HTTP {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        return DeliveryReceipt(
            conversation_id=conversation_id,
            message_id=(data.get("key") or {}).get("id") or data.get("messageid"),
            data=data,
        )


def create_transport(token: Optional[str] = None) -> Transport:
    """Factory function to create the configured transport"""
    token = token or settings.UAZAPI_TOKEN
    if token:
        return WhatsAppTransport(token=token)
    logger.warning("UAZAPI token not configured, outbound messages are only recorded")
    return RecordingTransport()
