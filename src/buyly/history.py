"""Triggers on the ``history-items`` collection."""

from typing import Any, Dict

from buyly.errors import ValidationError
from buyly.log import get_logger
from buyly.models import DocumentEvent, parse
from buyly.receipts import delete_receipt

logger = get_logger(__name__)


def on_history_item_deleted(event: Dict[str, Any]) -> None:
    """Remove the receipt image attached to a deleted history item.

    Never raises; a failed delete is only logged so the trigger completes.
    """
    try:
        doc_event = parse(DocumentEvent, event)
    except ValidationError as e:
        logger.warning("Ignoring history delete event: %s", e.message)
        return
    if not doc_event.data:
        logger.warning("No data associated with the delete event")
        return

    item_id = doc_event.document_id
    logger.info("History item deleted: %s", item_id)

    receipt_url = doc_event.data.get("receiptURL")
    if not receipt_url:
        logger.info("No receipt URL found for history item %s, skipping deletion", item_id)
        return

    try:
        delete_receipt({"filename": receipt_url})
    except Exception as e:
        logger.error("Error deleting receipt for history item %s: %s", item_id, e)
