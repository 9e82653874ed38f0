"""Shared grocery lists: invites, leaving, and new-item notifications.

Membership changes are the authoritative step and either succeed or raise.
Everything after them (notification documents, pushes, emails) is best
effort: each piece runs in its own failure boundary and can't undo the
membership change.
"""

from typing import Any, Callable, Dict, List, Optional

from buyly.auth import find_user_by_email
from buyly.bulk_writer import BulkWriter, FanOutResult, Update, fan_out
from buyly.config import load_settings
from buyly.document_store import ArrayRemove, ArrayUnion, DocumentStore, refs
from buyly.errors import (
    AlreadyExistsError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
    ValidationError,
)
from buyly.log import get_logger
from buyly.mailer import send_grocery_list_invite_email
from buyly.models import DocumentEvent, GroceryItem, GroceryList, InviteUserRequest, LeaveGroceryListRequest, parse
from buyly.push import send_bulk_push_notifications
from buyly.utils import iso_timestamp

logger = get_logger(__name__)


def display_name(user_data: Optional[Dict[str, Any]]) -> str:
    user_data = user_data or {}
    return user_data.get("displayName") or user_data.get("name") or user_data.get("email") or "Someone"


def push_tokens(user_data: Optional[Dict[str, Any]]) -> List[str]:
    """Token strings from a user's ``pushTokens`` device entries."""
    entries = (user_data or {}).get("pushTokens") or []
    return [entry["token"] for entry in entries if isinstance(entry, dict) and entry.get("token")]


def create_notification(
    store: DocumentStore,
    user_id: str,
    kind: str,
    title: str,
    body: str,
    data: Dict[str, Any],
) -> str:
    """Write an in-app notification document. Returns its id."""
    now = iso_timestamp()
    notification_id = store.add(
        "notifications",
        {
            "userId": user_id,
            "type": kind,
            "title": title,
            "body": body,
            "data": data,
            "read": False,
            "dismissed": False,
            "createdAt": now,
            "updatedAt": now,
        },
    )
    logger.info("Created notification document for user %s", user_id)
    return notification_id


def push_to_user(
    user_id: str,
    user_data: Optional[Dict[str, Any]],
    title: str,
    body: str,
    data: Dict[str, Any],
    channel_id: str,
) -> int:
    """Push to every device a user has registered. Returns the token count."""
    tokens = push_tokens(user_data)
    if not tokens:
        logger.info("User %s has no push tokens, skipping push notification", user_id)
        return 0
    send_bulk_push_notifications(tokens, title, body, data=data, channel_id=channel_id)
    logger.info("Sent push notification to %d device(s) for user %s", len(tokens), user_id)
    return len(tokens)


def _require_auth(auth_uid: Optional[str], action: str) -> str:
    if not auth_uid:
        logger.error("Unauthenticated request to %s", action)
        raise UnauthenticatedError(f"You must be authenticated to {action}")
    return auth_uid


def _run_best_effort(steps: Dict[str, Callable[[], Any]], label: str) -> FanOutResult:
    return fan_out(steps, lambda name: steps[name](), label=label)


# ---------------------------------------------------------------------------
# New item fan-out
# ---------------------------------------------------------------------------


def on_grocery_item_added(
    event: Dict[str, Any],
    store: DocumentStore,
    settings: Optional[Dict[str, Any]] = None,
) -> Optional[FanOutResult]:
    """
    Notify the other members of a list that an item was added.

    Each member gets a notification document and a push to their devices.
    A failure for one member is logged and the rest are still notified.
    Never raises.

    Returns:
        Per-member outcomes, or None if nobody needed notifying
    """
    try:
        settings = settings or load_settings()
        doc_event = parse(DocumentEvent, event)
        if not doc_event.data:
            logger.warning("No data associated with the event")
            return None
        item = parse(GroceryItem, doc_event.data)
        item_id = doc_event.document_id

        if not item.grocery_list_id:
            logger.info("Item has no GroceryListId, skipping notification")
            return None
        list_id = item.grocery_list_id
        logger.info("New grocery item added: %s to list %s", item.name, list_id)

        list_data = store.get("grocery-lists", list_id)
        if list_data is None:
            logger.warning("Grocery list not found: %s", list_id)
            return None
        grocery_list = parse(GroceryList, list_data)
        list_name = grocery_list.title or "Grocery List"

        recipients = [uid for uid in grocery_list.all_members() if uid != item.user_id]
        if not recipients:
            logger.info("No other members to notify")
            return None

        added_by_name = display_name(store.get("users", item.user_id))
        title = "New Item Added"
        body = f'{added_by_name} added "{item.name}" to {list_name}'
        push_data = {
            "type": "grocery_item_added",
            "groceryListId": list_id,
            "itemId": item_id,
            "itemName": item.name,
            "addedBy": item.user_id,
            "addedByUserName": added_by_name,
        }
        channel = settings["push"]["channels"]["item_added"]

        def notify(member_id: str) -> None:
            create_notification(
                store,
                member_id,
                "grocery_item_added",
                title,
                body,
                {**push_data, "groceryListName": list_name},
            )
            push_to_user(member_id, store.get("users", member_id), title, body, push_data, channel)

        logger.info("Notifying %d member(s)", len(recipients))
        result = fan_out(recipients, notify, label="member")
        logger.info("Successfully processed notifications for new item: %s", item.name)
        return result
    except Exception as e:
        logger.error("Error in on_grocery_item_added: %s", e)
        return None


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


def invite_user_to_grocery_list(
    auth_uid: Optional[str],
    request: Dict[str, Any],
    store: DocumentStore,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Add the user with the given email to a grocery list.

    Raises:
        UnauthenticatedError: no caller
        ValidationError: bad payload, or the caller invited themselves
        NotFoundError: no user with that email, or no such list
        PermissionDeniedError: the caller is neither owner nor member
        AlreadyExistsError: the invitee is already a member
    """
    inviter_id = _require_auth(auth_uid, "invite users to a grocery list")
    settings = settings or load_settings()
    req = parse(InviteUserRequest, request)
    list_id = req.grocery_list_id

    logger.info("Looking up user with email: %s", req.email)
    invitee = find_user_by_email(store, req.email)
    if invitee is None:
        logger.warning("No user found with email: %s", req.email)
        raise NotFoundError("No user found with the provided email address")
    invitee_id = invitee.id

    if invitee_id == inviter_id:
        logger.warning("User attempted to invite themselves")
        raise ValidationError("You cannot invite yourself to the grocery list")

    list_data = store.get("grocery-lists", list_id)
    if list_data is None:
        logger.warning("Grocery list not found: %s", list_id)
        raise NotFoundError("Grocery list not found")
    grocery_list = parse(GroceryList, list_data)

    if inviter_id != grocery_list.owner and inviter_id not in grocery_list.members:
        logger.warning("User %s is not authorized to invite users to list %s", inviter_id, list_id)
        raise PermissionDeniedError("You do not have permission to invite users to this grocery list")

    if invitee_id in grocery_list.members:
        logger.info("User %s is already a member of list %s", invitee_id, list_id)
        raise AlreadyExistsError("This user is already a member of the grocery list")

    store.update(
        "grocery-lists",
        list_id,
        {"members": ArrayUnion(invitee_id), "updatedAt": iso_timestamp()},
    )
    logger.info("Successfully added user %s (%s) to grocery list %s", invitee_id, req.email, list_id)

    inviter_name = display_name(store.get("users", inviter_id))
    list_name = grocery_list.title or grocery_list.name or "a grocery list"
    title = "Added to Grocery List"
    body = f'{inviter_name} added you to "{list_name}"'
    data = {
        "groceryListId": list_id,
        "invitingUserId": inviter_id,
        "invitingUserName": inviter_name,
    }

    _run_best_effort(
        {
            "notification": lambda: create_notification(
                store, invitee_id, "grocery_list_invite", title, body, {**data, "groceryListName": list_name}
            ),
            "push": lambda: push_to_user(
                invitee_id,
                invitee.data,
                title,
                body,
                {"type": "grocery_list_invite", **data},
                settings["push"]["channels"]["invites"],
            ),
            "email": lambda: send_grocery_list_invite_email(
                req.email, inviter_name, list_name, from_address=settings["email"]["invite_from"]
            ),
        },
        label="invite notification",
    )

    return {
        "success": True,
        "message": f"Successfully invited {req.email} to the grocery list",
        "invitedUserId": invitee_id,
        "groceryListId": list_id,
    }


# ---------------------------------------------------------------------------
# Leaving
# ---------------------------------------------------------------------------


def leave_grocery_list(
    auth_uid: Optional[str],
    request: Dict[str, Any],
    store: DocumentStore,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Remove the caller from a grocery list's members.

    The caller's items on the list become personal items and the owner gets
    a notification; neither of those can fail the leave.

    Raises:
        UnauthenticatedError: no caller
        ValidationError: bad payload
        NotFoundError: no such list
        PermissionDeniedError: the caller owns the list or isn't a member
    """
    user_id = _require_auth(auth_uid, "leave a grocery list")
    settings = settings or load_settings()
    req = parse(LeaveGroceryListRequest, request)
    list_id = req.grocery_list_id

    list_data = store.get("grocery-lists", list_id)
    if list_data is None:
        logger.warning("Grocery list not found: %s", list_id)
        raise NotFoundError("Grocery list not found")
    grocery_list = parse(GroceryList, list_data)

    if grocery_list.owner == user_id:
        logger.warning("Owner %s attempted to leave their own list", user_id)
        raise PermissionDeniedError(
            "The owner cannot leave the grocery list. You must transfer ownership or delete the list."
        )
    if user_id not in grocery_list.members:
        logger.warning("User %s is not a member of list %s", user_id, list_id)
        raise PermissionDeniedError("You are not a member of this grocery list")

    store.update(
        "grocery-lists",
        list_id,
        {"members": ArrayRemove(user_id), "updatedAt": iso_timestamp()},
    )
    logger.info("Successfully removed user %s from grocery list %s", user_id, list_id)

    try:
        items = store.query(
            "grocery-items",
            [("GroceryListId", "==", list_id), ("userId", "==", user_id)],
        )
        writer = BulkWriter(store, settings["bulk_write"]["batch_size"])
        result = writer.apply_to_all(
            refs(items), Update({"GroceryListId": None, "updatedAt": iso_timestamp()})
        )
        if result.processed:
            logger.info("Converted %d items to personal items for user %s", result.processed, user_id)
    except Exception as e:
        logger.error("Error cleaning up user's grocery items: %s", e)

    if grocery_list.owner:
        user_name = display_name(store.get("users", user_id))
        list_name = grocery_list.title or grocery_list.name or "a grocery list"
        _run_best_effort(
            {
                "notification": lambda: create_notification(
                    store,
                    grocery_list.owner,
                    "member_left_grocery_list",
                    "Member Left List",
                    f"{user_name} left {list_name}",
                    {
                        "groceryListId": list_id,
                        "leavingUserId": user_id,
                        "leavingUserName": user_name,
                        "groceryListName": list_name,
                    },
                ),
            },
            label="leave notification",
        )

    return {
        "success": True,
        "message": "Successfully left the grocery list",
        "groceryListId": list_id,
    }
