"""Daily collection counts emailed to the team."""

from typing import Any, Dict, Optional

from supabase import Client, create_client

from buyly.config import load_settings, require_env
from buyly.document_store import DocumentStore
from buyly.log import get_logger
from buyly.mailer import render_template, send_email

logger = get_logger(__name__)

# Store collection -> template placeholder
COUNTED_COLLECTIONS = {
    "grocery-items": "__GROCERY_ITEMS_COUNT__",
    "grocery-lists": "__GROCERY_LISTS_COUNT__",
    "history-items": "__HISTORY_ITEMS_COUNT__",
    "todos": "__TODOS_COUNT__",
    "users": "__USERS_COUNT__",
}


def get_supabase_client() -> Client:
    url, key = require_env("SUPABASE_URL", "SUPABASE_KEY")
    return create_client(url, key)


def count_store_items(client: Client) -> int:
    """Exact row count of the product catalogue table."""
    response = client.table("store_items").select("*", count="exact", head=True).execute()
    return response.count or 0


def send_grocery_items_count(
    store: DocumentStore,
    supabase_client: Optional[Client] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, int]:
    """
    Count the app's collections and email the daily report.

    Returns:
        The counts that were sent, keyed by collection

    Raises:
        ConfigurationError: if SMTP or Supabase settings are missing
    """
    settings = settings or load_settings()
    require_env("SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS")
    logger.info("Starting grocery items count report")

    counts = {collection: store.count(collection) for collection in COUNTED_COLLECTIONS}
    logger.info("Retrieved counts from the document store: %s", counts)

    client = supabase_client or get_supabase_client()
    counts["store_items"] = count_store_items(client)
    logger.info("Retrieved counts from Supabase: store items: %d", counts["store_items"])

    replacements = {
        placeholder: str(counts[collection]) for collection, placeholder in COUNTED_COLLECTIONS.items()
    }
    replacements["__STORE_ITEMS_COUNT__"] = str(counts["store_items"])
    html = render_template("daily_report", replacements)

    send_email(
        settings["email"]["report_to"],
        "Daily Database Counts Report",
        html,
        from_address=settings["email"]["report_from"],
    )
    return counts
