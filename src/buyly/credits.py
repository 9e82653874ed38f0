"""AI credit accounting on the ``ai`` map of each ``users`` document."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from buyly.config import load_settings
from buyly.document_store import DocumentStore, Increment
from buyly.errors import NotFoundError
from buyly.log import get_logger
from buyly.models import AddCreditsRequest, parse
from buyly.utils import iso_timestamp, today_date

logger = get_logger(__name__)


def ai_profile(amount: int, tier: str, reason: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """A fresh ``ai`` map: the starting balance and zeroed usage counters."""
    now = now or datetime.now(timezone.utc)
    today = today_date(now)
    return {
        "credits": amount,
        "tier": tier,
        "dailyUsage": 0,
        "lastDailyReset": today,
        "lastMonthlyReset": today,
        "lastCreditsAdded": {
            "amount": amount,
            "date": iso_timestamp(now),
            "reason": reason,
        },
        "totalRequests": 0,
        "tokensUsed": 0,
        "estimatedUsdSpent": 0,
        "lastUsageAt": None,
        "modelsUsed": {},
    }


def add_credits(store: DocumentStore, user_id: str, credits: float, reason: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Add credits to a user's balance.

    Returns:
        The new balance, the amount added, the reason and the timestamp

    Raises:
        NotFoundError: if the user document does not exist
    """
    now = now or datetime.now(timezone.utc)
    timestamp = iso_timestamp(now)

    if not store.exists("users", user_id):
        raise NotFoundError("User not found")

    store.update(
        "users",
        user_id,
        {
            "ai.credits": Increment(credits),
            "ai.lastCreditsAdded": {"amount": credits, "date": timestamp, "reason": reason},
            "updated_at": timestamp,
        },
    )
    new_balance = store.get("users", user_id)["ai"]["credits"]
    logger.info("Added %s credits to user %s for reason: %s", credits, user_id, reason)

    return {
        "newBalance": new_balance,
        "creditsAdded": credits,
        "reason": reason,
        "timestamp": timestamp,
    }


def add_credits_to_user(request: Dict[str, Any], store: DocumentStore, now: Optional[datetime] = None) -> Dict[str, Any]:
    req = parse(AddCreditsRequest, request)
    result = add_credits(store, req.id, req.credits, req.reason, now)
    return {
        "success": True,
        "message": f"Successfully added {req.credits} credits to user {req.id}",
        **result,
    }


def get_user_ai_credits(settings: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Sample ``ai`` profile for checking the client's credit display."""
    settings = settings or load_settings()
    return {
        "ai": ai_profile(
            settings["credits"]["signup_amount"],
            settings["credits"]["tier"],
            "test-function",
            now,
        ),
        "message": "This is a test function that returns AI data with 1000 credits",
    }
