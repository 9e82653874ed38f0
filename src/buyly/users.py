"""User lifecycle: sign-up, welcome email, account deletion and export."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from buyly.auth import AuthProvider, AuthUser
from buyly.bulk_writer import BulkWriter, Delete, Set
from buyly.config import load_settings
from buyly.credits import ai_profile
from buyly.document_store import DocumentRef, DocumentStore, refs
from buyly.errors import ValidationError
from buyly.log import get_logger
from buyly.mailer import send_welcome_email as send_welcome_email_message
from buyly.models import AuthUserEvent
from buyly.utils import data_dir, iso_timestamp

logger = get_logger(__name__)

# Collections holding per-user documents, removed when the account goes
OWNED_COLLECTIONS = [
    "grocery-items",
    "todos",
    "grocery-lists",
    "history-items",
    "recent-search-items",
]


def on_create_user(
    event: Dict[str, Any],
    store: DocumentStore,
    settings: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Give a new user their signup credits. Returns the merged fields."""
    settings = settings or load_settings()
    now = now or datetime.now(timezone.utc)
    try:
        user = AuthUserEvent.from_event(event)
    except ValidationError as e:
        logger.error("Ignoring user created event: %s", e.message)
        return {}

    fields = {
        "ai": ai_profile(
            settings["credits"]["signup_amount"],
            settings["credits"]["tier"],
            "signup-reward",
            now,
        ),
        "created_at": iso_timestamp(now),
        "updated_at": iso_timestamp(now),
    }
    store.set("users", user.uid, fields, merge=True)
    logger.info("Created AI credit profile for user %s", user.uid)
    return fields


def send_welcome_email(event: Dict[str, Any], settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Email the welcome template to a new user. Never raises."""
    try:
        settings = settings or load_settings()
        user = AuthUserEvent.from_event(event)
        if not user.email:
            logger.error("User email not found")
            return {"success": False, "error": "User email or display name not found"}

        message_id = send_welcome_email_message(
            user.email,
            user.display_name or "there",
            from_address=settings["email"]["welcome_from"],
        )
        logger.info("Welcome email sent to %s (%s)", user.email, message_id)
        return {"success": True}
    except Exception as e:
        logger.error("Error sending welcome email: %s", e)
        return {"success": False, "error": str(e)}


def on_user_deleted(
    event: Dict[str, Any],
    store: DocumentStore,
    settings: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Remove everything a deleted user owned and leave a tombstone.

    Returns:
        Number of documents deleted per collection
    """
    settings = settings or load_settings()
    now = now or datetime.now(timezone.utc)
    try:
        user = AuthUserEvent.from_event(event)
    except ValidationError as e:
        logger.error("Ignoring user deleted event: %s", e.message)
        return {}
    uid = user.uid
    logger.info("User deleted: %s", uid)

    writer = BulkWriter(store, settings["bulk_write"]["batch_size"])

    store.delete("users", uid)
    logger.info("Deleted user document for %s", uid)

    deleted = {}
    for collection in OWNED_COLLECTIONS:
        targets = refs(store.query(collection, [("userId", "==", uid)]))
        result = writer.apply_to_all(targets, Delete())
        deleted[collection] = result.processed
        if result.processed:
            logger.info("Deleted %d %s for user %s", result.processed, collection, uid)

    store.set(
        "deleted-users",
        uid,
        {
            "email": user.email,
            "displayName": user.display_name,
            "createdAt": user.creation_time,
            "lastLogin": user.last_sign_in_time,
            "deletedAt": iso_timestamp(now),
        },
    )

    logger.info("Successfully cleaned up all data for user %s", uid)
    return deleted


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def summarize(users: List[AuthUser]) -> Dict[str, int]:
    return {
        "totalUsers": len(users),
        "verifiedEmails": sum(1 for u in users if u.email_verified),
        "usersWithDisplayName": sum(1 for u in users if u.display_name),
        "disabledUsers": sum(1 for u in users if u.disabled),
        "usersWithPhoneNumber": sum(1 for u in users if u.phone_number),
    }


def export_users(
    auth: AuthProvider,
    store: DocumentStore,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Copy every auth user into the ``totalUsers`` collection."""
    settings = settings or load_settings()
    logger.info("Starting to fetch all authenticated users")

    users = list(auth.list_users())
    logger.info("Total users fetched: %d", len(users))

    exported_date = iso_timestamp()
    writer = BulkWriter(store, settings["bulk_write"]["batch_size"])
    result = writer.write_all(
        (
            DocumentRef("totalUsers", user.uid),
            Set({**user.to_dict(), "exportedDate": exported_date}),
        )
        for user in users
    )
    logger.info(
        "Saved %d users to totalUsers in %d batches", result.processed, result.batches_committed
    )

    return {"success": True, "totalUsers": len(users), "summary": summarize(users)}


def export_users_to_json(auth: AuthProvider, output_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Write every auth user to ``data/output/users-<timestamp>.json``."""
    if output_dir is None:
        output_dir = data_dir("output")
    output_dir.mkdir(parents=True, exist_ok=True)

    users = list(auth.list_users())
    exported_at = iso_timestamp()
    summary = summarize(users)

    output_path = output_dir / f"users-{exported_at.replace(':', '-').replace('.', '-')}.json"
    with open(output_path, "w") as f:
        json.dump(
            {
                "users": [u.to_dict() for u in users],
                "exportedAt": exported_at,
                "summary": summary,
            },
            f,
            indent=2,
        )
    logger.info("Saved %d users to: %s", len(users), output_path)

    return {"success": True, "totalUsers": len(users), "summary": summary, "outputPath": str(output_path)}
