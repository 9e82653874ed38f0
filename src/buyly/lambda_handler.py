"""AWS Lambda entry points for buyly.

Every entry point wraps its operation with S3 sync so the SQLite document
store and the error buffer persist between invocations, and flushes the
error digest at the end.

Three kinds of entry point:
- HTTP functions behind API Gateway (proxy integration). They answer
  ``OPTIONS`` preflights, accept only ``POST`` and return
  ``{"statusCode", "headers", "body"}``.
- Store and schedule triggers, which return a plain 200 and let any
  unexpected error propagate so the event can be retried.
- Cognito user-pool triggers, which must return the event they received.

``handler`` dispatches on ``event["function"]`` for deployments that route
everything through a single Lambda.

Lambda environment variables required:
    S3_BUCKET             – S3 bucket for data persistence
    SMTP_HOST             – SMTP server hostname
    SMTP_PORT             – SMTP server port
    SMTP_USER             – SMTP username / from address
    SMTP_PASS             – SMTP password / app password
    COGNITO_USER_POOL_ID  – user pool for auth lookups
    GOOGLE_API_KEY        – Gemini API key (used by google-genai)
"""

import base64
import json
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Sequence

from buyly import budget_alert, credits, grocery_lists, history, push, receipts, reports, users
from buyly.auth import AuthProvider
from buyly.config import load_dotenv
from buyly.document_store import DocumentStore
from buyly.errors import BuylyError, ValidationError
from buyly.log import get_logger, send_error_digest
from buyly.s3 import push_error_buffer, push_store, sync_data_from_s3
from buyly.utils import data_dir

logger = get_logger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, content-type",
}

HttpOperation = Callable[[Dict[str, Any], Optional[str], Optional[DocumentStore]], Dict[str, Any]]


@contextmanager
def invocation(use_store: bool = True) -> Iterator[Optional[DocumentStore]]:
    """Load .env, pull state from S3 and push this run's writes back afterwards.

    The digest is sent before the error buffer is synced, so the S3 copy of
    the buffer is removed rather than re-uploaded once it has been reported.
    A failed download aborts the run without uploading anything.
    """
    load_dotenv()
    if not use_store:
        try:
            yield None
        finally:
            send_error_digest()
        return

    # Lambda writable directory
    tmp_data = data_dir()
    try:
        etag = sync_data_from_s3(tmp_data)
    except BuylyError:
        send_error_digest()
        raise

    store = DocumentStore()
    try:
        yield store
    finally:
        store.close()
        try:
            # Writes are kept even if the operation errored afterwards
            push_store(tmp_data, etag, store.journal)
        finally:
            send_error_digest()
            push_error_buffer(tmp_data)


def http_response(status: int, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    headers = dict(CORS_HEADERS)
    if body is not None:
        headers["Content-Type"] = "application/json"
    return {
        "statusCode": status,
        "headers": headers,
        "body": json.dumps(body) if body is not None else "",
    }


def request_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """The JSON body of an API Gateway proxy event; empty bodies give ``{}``."""
    raw = event.get("body")
    if not raw:
        return {}
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def caller_uid(event: Dict[str, Any]) -> Optional[str]:
    """The ``sub`` claim set by a Cognito authorizer, if any."""
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims") or (authorizer.get("jwt") or {}).get("claims") or {}
    return claims.get("sub")


def http_function(
    operation: HttpOperation,
    use_store: bool = True,
    methods: Sequence[str] = ("POST",),
) -> Callable[[Dict[str, Any], Any], Dict[str, Any]]:
    """Wrap ``operation(request, caller_uid, store)`` as an API Gateway handler."""

    def handle(event, context):
        method = (event.get("httpMethod") or "POST").upper()
        if method == "OPTIONS":
            return http_response(204)
        if method not in methods:
            return http_response(405, {"error": "Method not allowed"})

        try:
            with invocation(use_store) as store:
                try:
                    body = operation(request_body(event), caller_uid(event), store)
                    return http_response(200, body)
                except BuylyError as e:
                    log = logger.error if e.status >= 500 else logger.warning
                    log("%s failed: %s", operation.__name__, e.message)
                    return http_response(e.status, e.to_dict())
                except Exception as e:
                    logger.exception("Error in %s: %s", operation.__name__, e)
                    return http_response(
                        500, {"success": False, "error": "Internal server error", "message": str(e)}
                    )
        except BuylyError as e:
            # State could not be loaded or saved; already logged by buyly.s3
            return http_response(e.status, e.to_dict())

    handle.__name__ = operation.__name__
    return handle


def trigger_function(operation: Callable[[Dict[str, Any], Optional[DocumentStore]], Any], use_store: bool = True):
    """Wrap ``operation(event, store)`` as a store/schedule trigger handler."""

    def handle(event, context):
        with invocation(use_store) as store:
            operation(event, store)
        return {"statusCode": 200, "body": "OK"}

    handle.__name__ = operation.__name__
    return handle


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def _check_budget_alert(event, store):
    budget_alert.check_budget_alert(event, store, AuthProvider())


def _on_grocery_item_added(event, store):
    grocery_lists.on_grocery_item_added(event, store)


def _on_history_item_deleted(event, store):
    history.on_history_item_deleted(event)


def _on_user_deleted(event, store):
    users.on_user_deleted(event, store)


def _send_grocery_items_count(event, store):
    reports.send_grocery_items_count(store)


def _test_budget_alert(request, uid, store):
    return budget_alert.test_budget_alert(request, store, AuthProvider())


def _add_credits_to_user(request, uid, store):
    return credits.add_credits_to_user(request, store)


def _get_user_ai_credits(request, uid, store):
    return credits.get_user_ai_credits()


def _invite_user_to_grocery_list(request, uid, store):
    return grocery_lists.invite_user_to_grocery_list(uid, request, store)


def _leave_grocery_list(request, uid, store):
    return grocery_lists.leave_grocery_list(uid, request, store)


def _test_push_notification(request, uid, store):
    return push.test_push_notification(request)


def _create_upload_url(request, uid, store):
    return receipts.create_upload_url(request)


def _delete_receipt(request, uid, store):
    return receipts.delete_receipt(request)


def _extract_receipt(request, uid, store):
    return receipts.extract_receipt(request)


def _extract_price_tag(request, uid, store):
    return receipts.extract_price_tag(request)


def _grocery_items_count_report(request, uid, store):
    counts = reports.send_grocery_items_count(store)
    return {"success": True, "message": "Daily report sent", "counts": counts}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

check_budget_alert = trigger_function(_check_budget_alert)
on_grocery_item_added = trigger_function(_on_grocery_item_added)
on_history_item_deleted = trigger_function(_on_history_item_deleted, use_store=False)
on_user_deleted = trigger_function(_on_user_deleted)
send_grocery_items_count = trigger_function(_send_grocery_items_count)

test_budget_alert = http_function(_test_budget_alert)
add_credits_to_user = http_function(_add_credits_to_user)
get_user_ai_credits = http_function(_get_user_ai_credits, use_store=False, methods=("GET", "POST"))
invite_user_to_grocery_list = http_function(_invite_user_to_grocery_list)
leave_grocery_list = http_function(_leave_grocery_list)
test_push_notification = http_function(_test_push_notification, use_store=False)
create_upload_url = http_function(_create_upload_url, use_store=False)
delete_receipt = http_function(_delete_receipt, use_store=False)
extract_receipt = http_function(_extract_receipt, use_store=False)
extract_price_tag = http_function(_extract_price_tag, use_store=False)
grocery_items_count_report = http_function(_grocery_items_count_report)


def on_create_user(event, context):
    """Cognito post-confirmation trigger: signup credits and welcome email."""
    with invocation() as store:
        users.on_create_user(event, store)
        users.send_welcome_email(event)
    return event


FUNCTIONS: Dict[str, Callable[[Dict[str, Any], Any], Any]] = {
    "check_budget_alert": check_budget_alert,
    "on_grocery_item_added": on_grocery_item_added,
    "on_history_item_deleted": on_history_item_deleted,
    "on_user_deleted": on_user_deleted,
    "send_grocery_items_count": send_grocery_items_count,
    "on_create_user": on_create_user,
    "test_budget_alert": test_budget_alert,
    "add_credits_to_user": add_credits_to_user,
    "get_user_ai_credits": get_user_ai_credits,
    "invite_user_to_grocery_list": invite_user_to_grocery_list,
    "leave_grocery_list": leave_grocery_list,
    "test_push_notification": test_push_notification,
    "create_upload_url": create_upload_url,
    "delete_receipt": delete_receipt,
    "extract_receipt": extract_receipt,
    "extract_price_tag": extract_price_tag,
    "grocery_items_count_report": grocery_items_count_report,
}


def handler(event, context):
    """AWS Lambda entry point for single-function deployments.

    Routes on ``event["function"]``, which API Gateway stage variables or the
    EventBridge rule input set to one of the names in ``FUNCTIONS``.
    """
    name = event.get("function")
    func = FUNCTIONS.get(name)
    if func is None:
        logger.error("Unknown function requested: %r", name)
        return http_response(400, ValidationError(f"Unknown function: {name}").to_dict())
    return func(event, context)
