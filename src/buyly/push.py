"""Push notifications through the Expo push API.

Optional environment variables:
    EXPO_ACCESS_TOKEN – bearer token, required only when the Expo project
                        has enhanced push security enabled

Invalid device tokens are skipped with a warning rather than failing the
send. Messages go out in chunks of 100 and receipts are fetched in chunks
of 300, the limits the Expo service accepts per request.
"""

import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from buyly.errors import UpstreamError, ValidationError
from buyly.log import get_logger
from buyly.models import TestPushRequest, parse

logger = get_logger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_RECEIPTS_URL = "https://exp.host/--/api/v2/push/getReceipts"

PUSH_CHUNK_SIZE = 100
RECEIPT_CHUNK_SIZE = 300

_EXPO_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")
_UUID_TOKEN_RE = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def is_expo_push_token(token: Any) -> bool:
    return isinstance(token, str) and bool(
        _EXPO_TOKEN_RE.match(token) or _UUID_TOKEN_RE.match(token)
    )


@dataclass
class PushMessage:
    to: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    sound: str = "default"
    badge: Optional[int] = None
    channel_id: Optional[str] = None
    priority: Optional[str] = "high"

    def to_dict(self) -> Dict[str, Any]:
        message = {
            "to": self.to,
            "sound": self.sound,
            "title": self.title,
            "body": self.body,
            "data": self.data,
        }
        if self.priority:
            message["priority"] = self.priority
        if self.badge is not None:
            message["badge"] = self.badge
        if self.channel_id:
            message["channelId"] = self.channel_id
        return message


def _headers() -> Dict[str, str]:
    headers = {
        "Accept": "application/json",
        "Accept-Encoding": "gzip, deflate",
        "Content-Type": "application/json",
    }
    token = os.environ.get("EXPO_ACCESS_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _post(url: str, payload: Any) -> Any:
    response = requests.post(url, json=payload, headers=_headers(), timeout=30)
    response.raise_for_status()
    return response.json().get("data")


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def build_messages(tokens: Iterable[str], **message_fields) -> List[PushMessage]:
    """One message per valid token; invalid tokens are logged and skipped."""
    messages = []
    for token in tokens:
        if not is_expo_push_token(token):
            logger.warning("Push token %s is not a valid Expo push token", token)
            continue
        messages.append(PushMessage(to=token, **message_fields))
    return messages


def send_messages(messages: List[PushMessage], isolate_chunks: bool = True) -> List[Dict[str, Any]]:
    """
    Post messages to Expo in chunks and collect the tickets.

    Args:
        messages: Messages to send
        isolate_chunks: If True a failed chunk is logged and skipped;
            otherwise the failure is raised as an UpstreamError

    Returns:
        One ticket per delivered message: ``{"status": "ok", "id": ...}`` or
        ``{"status": "error", "message": ..., "details": ...}``
    """
    tickets: List[Dict[str, Any]] = []
    for chunk in _chunks(messages, PUSH_CHUNK_SIZE):
        try:
            tickets.extend(_post(EXPO_PUSH_URL, [m.to_dict() for m in chunk]) or [])
        except (requests.RequestException, ValueError) as e:
            if not isolate_chunks:
                raise UpstreamError(f"Error sending push notifications: {e}")
            logger.error("Error sending push notification chunk: %s", e)
    return tickets


def send_bulk_push_notifications(
    push_tokens: Iterable[str],
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
    sound: str = "default",
    badge: Optional[int] = None,
    channel_id: Optional[str] = None,
    priority: Optional[str] = "high",
) -> List[Dict[str, Any]]:
    """Send the same notification to many devices. Returns the tickets."""
    messages = build_messages(
        push_tokens,
        title=title,
        body=body,
        data=data or {},
        sound=sound,
        badge=badge,
        channel_id=channel_id,
        priority=priority,
    )
    if not messages:
        logger.warning("No valid push tokens provided for bulk notification")
        return []

    logger.info("Sending %d push notifications", len(messages))
    tickets = send_messages(messages)
    ok = sum(1 for t in tickets if t.get("status") == "ok")
    logger.info("Successfully sent %d/%d notifications", ok, len(tickets))
    return tickets


def send_push_notification(push_token: str, title: str, body: str, **kwargs) -> Optional[Dict[str, Any]]:
    """Send one notification. Returns the ok ticket, or None on any failure."""
    tickets = send_bulk_push_notifications([push_token], title, body, **kwargs)
    if not tickets:
        return None
    ticket = tickets[0]
    if ticket.get("status") != "ok":
        logger.error("Error sending push notification: %s", ticket.get("message"))
        return None
    logger.info("Successfully sent push notification. Ticket ID: %s", ticket.get("id"))
    return ticket


def get_push_receipts(receipt_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    """Fetch delivery receipts for ticket ids. Failed chunks are skipped."""
    receipts: Dict[str, Dict[str, Any]] = {}
    for chunk in _chunks(list(receipt_ids), RECEIPT_CHUNK_SIZE):
        try:
            receipts.update(_post(EXPO_RECEIPTS_URL, {"ids": chunk}) or {})
        except (requests.RequestException, ValueError) as e:
            logger.error("Error fetching receipts: %s", e)
            continue
    for receipt_id, receipt in receipts.items():
        if receipt.get("status") == "error":
            logger.error(
                "Error in receipt %s: %s %s",
                receipt_id,
                receipt.get("message"),
                receipt.get("details"),
            )
    return receipts


def test_push_notification(
    request: Dict[str, Any],
    receipt_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Send test notifications and report tickets and receipts.

    Raises:
        ValidationError: if ``pushTokens`` is missing/empty or none are valid
        UpstreamError: if a chunk cannot be sent
    """
    req = parse(TestPushRequest, request)
    messages = build_messages(
        req.push_tokens,
        title=req.title,
        body=req.body,
        data=req.data,
        sound=req.sound,
        badge=req.badge,
        channel_id=req.channel_id,
        priority=req.priority,
    )
    if not messages:
        logger.error("No valid push tokens provided")
        raise ValidationError("No valid Expo push tokens provided")

    logger.info("Sending %d push notifications", len(messages))
    tickets = send_messages(messages, isolate_chunks=False)
    receipt_ids = [t["id"] for t in tickets if t.get("status") == "ok" and t.get("id")]
    logger.info("Successfully sent %d notifications", len(receipt_ids))

    receipts: Dict[str, Dict[str, Any]] = {}
    if receipt_ids:
        # Receipts are not ready immediately after sending
        sleep(receipt_delay)
        receipts = get_push_receipts(receipt_ids)

    return {
        "success": True,
        "message": f"Test notifications sent to {len(messages)} device(s)",
        "summary": {
            "totalTokens": len(req.push_tokens),
            "validTokens": len(messages),
            "ticketsSent": len(tickets),
            "successfulTickets": len(receipt_ids),
            "receiptsRetrieved": len(receipts),
        },
        "tickets": tickets,
        "receipts": receipts,
    }

