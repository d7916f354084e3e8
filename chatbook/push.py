"""Push relay client.

Delivery of a notification to a device is best-effort: every failure is
returned as a :class:`PushResult` rather than raised, so callers can
record it and move on.
"""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from fastapi import Request

logger = logging.getLogger(__name__)

NOTIFICATION_BODY_LENGTH = 100


@dataclass
class PushResult:
    """Outcome of one push attempt."""

    ok: bool
    error: str | None = None


class PushRelay(Protocol):
    """Anything that can attempt to deliver a payload to a device token."""

    def send(self, token: str, payload: dict[str, Any]) -> PushResult:
        ...


class HttpPushRelay:
    """Push relay that posts messages to an HTTP push gateway."""

    def __init__(self, url: str, api_key: str = "", timeout: float = 10.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, token: str, payload: dict[str, Any]) -> PushResult:
        """Post ``payload`` addressed to ``token``; never raises on failure."""
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        message = {"token": token, **payload}
        try:
            response = httpx.post(
                self.url,
                json={"message": message},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error = f"Push gateway returned {exc.response.status_code}"
            logger.warning("Push relay rejected", extra={"error": error})
            return PushResult(ok=False, error=error)
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Push relay failed", extra={"error": error})
            return PushResult(ok=False, error=error)
        return PushResult(ok=True)


class DisabledPushRelay:
    """Relay used when no push gateway is configured."""

    def send(self, token: str, payload: dict[str, Any]) -> PushResult:
        return PushResult(ok=False, error="Push gateway is not configured")


def attempt_push(relay: PushRelay, token: str, payload: dict[str, Any]) -> PushResult:
    """
    Call ``relay.send`` and downgrade any exception to a failed result.

    Relay implementations are not trusted to honour the no-raise contract;
    whatever escapes them is logged and returned as a failure.
    """
    try:
        return relay.send(token, payload)
    except Exception as exc:
        logger.exception("Push relay raised")
        return PushResult(ok=False, error=str(exc) or type(exc).__name__)


def build_chat_payload(
    *,
    message_id: str,
    conversation_id: str,
    sender_id: str,
    sender_name: str,
    sender_phone: str,
    message_text: str,
    message_type: str,
    timestamp: int,
) -> dict[str, Any]:
    """Payload announcing a new chat message to the receiver's device."""
    return {
        "data": {
            "type": "chat_message",
            "messageId": message_id,
            "conversationId": conversation_id,
            "senderId": sender_id,
            "senderName": sender_name,
            "senderPhone": sender_phone,
            "messageText": message_text,
            "messageType": message_type,
            "timestamp": str(timestamp),
        },
        "notification": {
            "title": sender_name,
            "body": message_text[:NOTIFICATION_BODY_LENGTH],
        },
        "android": {"priority": "high"},
    }


def build_receipt_payload(
    *, message_id: str, status: str, conversation_id: str, timestamp: int
) -> dict[str, Any]:
    """Payload telling the sender's device a message was delivered or read."""
    return {
        "data": {
            "type": "delivery_receipt",
            "messageId": message_id,
            "status": status,
            "conversationId": conversation_id,
            "timestamp": str(timestamp),
        },
        "android": {"priority": "high"},
    }


def get_push_relay(request: Request) -> PushRelay:
    """FastAPI dependency returning the application's push relay."""
    return request.app.state.runtime.push_relay


def format_amount(amount: float) -> str:
    """Amount with thousands separators, without a zero fraction."""
    text = f"{amount:,.2f}"
    return text[:-3] if text.endswith(".00") else text


def build_ledger_event_payload(
    *,
    data: dict[str, str],
    sender_name: str,
    amount: float,
    entry_type: str,
    note: str,
    currency_label: str,
) -> dict[str, Any]:
    """Payload telling a contact's device about a shared ledger entry."""
    body = f"{sender_name} recorded {currency_label} {format_amount(amount)} ({entry_type})"
    if note:
        body = f"{body} - {note}"
    return {
        "data": {"type": "ledger_event", **data},
        "notification": {"title": sender_name, "body": body},
        "android": {"priority": "high"},
    }
