"""Monthly budget alerts.

When a shopping trip is logged (a ``history-items`` document is created) the
owner's month-to-date spend is compared with their monthly budget. Once it
reaches the threshold (50% by default) one alert email is sent, and a
``budget-alerts/{userId}_{year}_{month}`` record is written so no further
alert goes out for that user in the same calendar month. ``month`` is the
zero-based month index, as in the records the mobile client reads.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from buyly.auth import AuthProvider
from buyly.config import load_settings
from buyly.document_store import DocumentStore
from buyly.errors import AlreadyExistsError, NotFoundError, ValidationError
from buyly.log import get_logger
from buyly.mailer import BudgetAlertEmail, send_budget_alert_email
from buyly.models import AlertRecord, BudgetProfile, DocumentEvent, SpendingRecord, TestBudgetAlertRequest, parse
from buyly.utils import iso_timestamp, month_window

logger = get_logger(__name__)

ALERTS_COLLECTION = "budget-alerts"


def alert_key(user_id: str, now: datetime) -> str:
    return f"{user_id}_{now.year}_{now.month - 1}"


def month_to_date_spend(store: DocumentStore, user_id: str, now: datetime) -> float:
    """Sum of ``totalAmount`` over the user's history items this month."""
    start, end = month_window(now)
    records = store.query(
        "history-items",
        [("userId", "==", user_id), ("date", ">=", start), ("date", "<=", end)],
    )
    total = 0.0
    for snap in records:
        amount = snap.data.get("totalAmount")
        if isinstance(amount, (int, float)) and not isinstance(amount, bool):
            total += amount
    return total


def check_budget_alert(
    event: Dict[str, Any],
    store: DocumentStore,
    auth: AuthProvider,
    settings: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Optional[AlertRecord]:
    """
    Decide whether a new spending record pushes its owner over the alert
    threshold and, if so, send this month's single alert.

    Args:
        event: ``{"documentId": ..., "data": {...}}`` for the created record
        store: Document store holding users, history items and alerts
        auth: Auth provider used to resolve the user's email
        settings: Loaded settings; read from disk when omitted
        now: Current server-local time

    Returns:
        The AlertRecord written, or None when no alert was sent
    """
    settings = settings or load_settings()
    now = now or datetime.now()

    try:
        doc_event = parse(DocumentEvent, event)
        if not doc_event.data:
            logger.error("No data associated with the event")
            return None
        record = parse(SpendingRecord, doc_event.data)
    except ValidationError as e:
        logger.error("Ignoring history item event: %s", e.message)
        return None

    user_id = record.user_id
    logger.info("Processing budget alert check for user: %s", user_id)

    user_data = store.get("users", user_id)
    if user_data is None:
        logger.error("User document not found for userId: %s", user_id)
        return None

    profile = parse(BudgetProfile, user_data)
    if not profile.has_budget:
        logger.info("User %s does not have a budget set", user_id)
        return None
    if settings["budget_alert"]["require_alert_flag"] and not profile.is_budget_alert_set:
        logger.info("User %s does not have budget alerts enabled", user_id)
        return None

    monthly_budget = profile.monthly_budget
    total_spent = month_to_date_spend(store, user_id, now)
    percentage_spent = total_spent / monthly_budget * 100
    logger.info("User %s has spent %.2f%% of their monthly budget", user_id, percentage_spent)

    if percentage_spent < settings["budget_alert"]["threshold_percent"]:
        return None

    key = alert_key(user_id, now)
    if store.exists(ALERTS_COLLECTION, key):
        logger.info("Budget alert already sent for user %s this month", user_id)
        return None

    try:
        user = auth.get_user(user_id)
    except NotFoundError:
        logger.error("No auth user found for userId: %s", user_id)
        return None
    if not user.email:
        logger.error("No email found for user: %s", user_id)
        return None

    send_budget_alert_email(
        user.email,
        BudgetAlertEmail(
            user_name=user.display_name or "there",
            monthly_budget=monthly_budget,
            amount_spent=total_spent,
            percentage_spent=percentage_spent,
        ),
        from_address=settings["email"]["budget_alert_from"],
    )

    alert = AlertRecord(
        user_id=user_id,
        email=user.email,
        monthly_budget=monthly_budget,
        amount_spent=total_spent,
        percentage_spent=percentage_spent,
        sent_at=iso_timestamp(),
        month=now.month - 1,
        year=now.year,
    )
    try:
        store.create(ALERTS_COLLECTION, key, alert.to_document())
    except AlreadyExistsError:
        # A concurrent invocation recorded the alert between our check and write
        logger.warning("Budget alert for user %s this month was recorded concurrently", user_id)
        return None

    logger.info("Budget alert sent to user %s (%s)", user_id, user.email)
    return alert


def test_budget_alert(
    request: Dict[str, Any],
    store: DocumentStore,
    auth: AuthProvider,
    settings: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Send a budget alert for a user regardless of threshold or history.

    No AlertRecord is written, so the real monthly alert still fires later.

    Raises:
        ValidationError: missing userId, no budget set, or no email
        NotFoundError: unknown user
    """
    settings = settings or load_settings()
    now = now or datetime.now()

    req = parse(TestBudgetAlertRequest, request)
    user_id = req.user_id
    logger.info("Testing budget alert for user: %s", user_id)

    user_data = store.get("users", user_id)
    if user_data is None:
        raise NotFoundError("User not found")

    profile = parse(BudgetProfile, user_data)
    if not profile.is_budget_set or not profile.has_budget:
        raise ValidationError(
            "User does not have budget set",
            userData={
                "is_budget_set": user_data.get("is_budget_set"),
                "is_budget_alert_set": user_data.get("is_budget_alert_set"),
                "budget": user_data.get("budget"),
            },
        )

    user = auth.get_user(user_id)
    if not user.email:
        raise ValidationError("User email not found")

    total_spent = month_to_date_spend(store, user_id, now)
    percentage_spent = total_spent / profile.monthly_budget * 100

    send_budget_alert_email(
        user.email,
        BudgetAlertEmail(
            user_name=user.display_name or "there",
            monthly_budget=profile.monthly_budget,
            amount_spent=total_spent,
            percentage_spent=percentage_spent,
        ),
        from_address=settings["email"]["budget_alert_from"],
    )

    return {
        "success": True,
        "message": "Test budget alert sent successfully",
        "data": {
            "userId": user_id,
            "email": user.email,
            "monthlyBudget": profile.monthly_budget,
            "totalSpent": total_spent,
            "percentageSpent": f"{percentage_spent:.2f}",
            "sentAt": iso_timestamp(),
        },
    }
