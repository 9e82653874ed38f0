"""Validated payloads for every trigger and request.

Events and request bodies arrive as loosely-typed JSON. Each operation
parses its payload into one of these models before touching any external
service; a payload that doesn't fit is rejected as a ``ValidationError``.
Field names follow the documents the mobile client writes (camelCase, with
a few legacy snake_case fields), exposed in Python as snake_case.
"""

from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Type, TypeVar, Union

import pydantic
from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
)

from buyly.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


class Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # alias -> message shown to the client when that field is invalid
    field_messages: ClassVar[Dict[str, str]] = {}


def _non_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value


NonBlankStr = Annotated[StrictStr, AfterValidator(_non_blank)]


def parse(model: Type[M], payload: Any) -> M:
    """Validate ``payload`` against ``model``.

    Raises:
        ValidationError: with the model's message for the first bad field
    """
    if not isinstance(payload, dict):
        raise ValidationError(f"Expected a JSON object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first["loc"] else ""
        messages = getattr(model, "field_messages", {})
        message = messages.get(field) or f"{field or 'payload'}: {first['msg']}"
        raise ValidationError(message, field=field)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentEvent(Payload):
    """A document created/deleted notification from the store."""

    document_id: StrictStr = Field(alias="documentId")
    data: Optional[Dict[str, Any]] = None


class SpendingRecord(Payload):
    """A logged shopping trip (``history-items`` document)."""

    record_id: Optional[str] = Field(default=None, alias="recordId")
    user_id: NonBlankStr = Field(alias="userId")
    date: Optional[str] = None
    total_amount: Optional[float] = Field(default=None, alias="totalAmount")
    receipt_url: Optional[str] = Field(default=None, alias="receiptURL")


class BudgetProfile(Payload):
    """The budget fields embedded in a ``users`` document."""

    monthly_budget: Optional[float] = Field(default=None, alias="budget")
    is_budget_set: Optional[bool] = None
    is_budget_alert_set: Optional[bool] = None

    @field_validator("monthly_budget", mode="before")
    @classmethod
    def _numeric_budget(cls, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value

    @field_validator("is_budget_set", "is_budget_alert_set", mode="before")
    @classmethod
    def _strict_flag(cls, value):
        # Anything but a real boolean counts as unset
        return value if isinstance(value, bool) else None

    @property
    def has_budget(self) -> bool:
        return bool(self.monthly_budget)


class AlertRecord(Payload):
    """Marker preventing a second budget alert in the same month."""

    user_id: str = Field(alias="userId")
    email: str
    monthly_budget: float = Field(alias="monthlyBudget")
    amount_spent: float = Field(alias="amountSpent")
    percentage_spent: float = Field(alias="percentageSpent")
    sent_at: str = Field(alias="sentAt")
    month: int
    year: int

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class GroceryItem(Payload):
    name: str = "an item"
    user_id: NonBlankStr = Field(alias="userId")
    grocery_list_id: Optional[str] = Field(default=None, alias="GroceryListId")


class GroceryList(Payload):
    title: Optional[str] = None
    name: Optional[str] = None
    owner: Optional[str] = None
    members: List[str] = Field(default_factory=list)

    def all_members(self) -> List[str]:
        """Owner followed by members, deduplicated, order preserved."""
        seen = []
        for uid in [self.owner, *self.members]:
            if uid and uid not in seen:
                seen.append(uid)
        return seen


class AuthUserEvent(Payload):
    """An auth provider user record delivered to the lifecycle hooks."""

    uid: NonBlankStr
    email: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    creation_time: Optional[str] = Field(default=None, alias="creationTime")
    last_sign_in_time: Optional[str] = Field(default=None, alias="lastSignInTime")

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "AuthUserEvent":
        """Accept either a flat user record or a Cognito trigger event."""
        if "userName" in event and "request" in event:
            attributes = event["request"].get("userAttributes", {})
            payload = {
                "uid": attributes.get("sub") or event["userName"],
                "email": attributes.get("email"),
                "displayName": attributes.get("name"),
            }
        else:
            metadata = event.get("metadata") or {}
            payload = {**event, **metadata}
        return parse(cls, payload)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TestBudgetAlertRequest(Payload):
    user_id: NonBlankStr = Field(alias="userId")

    field_messages: ClassVar[Dict[str, str]] = {"userId": "userId is required"}


class AddCreditsRequest(Payload):
    id: NonBlankStr
    credits: Union[StrictInt, StrictFloat]
    reason: NonBlankStr

    field_messages: ClassVar[Dict[str, str]] = {
        "id": "Valid user ID is required",
        "credits": "Valid positive credit amount is required",
        "reason": "Valid reason is required",
    }

    @field_validator("credits")
    @classmethod
    def _positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value


class InviteUserRequest(Payload):
    email: NonBlankStr
    grocery_list_id: NonBlankStr = Field(alias="groceryListId")

    field_messages: ClassVar[Dict[str, str]] = {
        "email": "A valid email address is required",
        "groceryListId": "A valid grocery list ID is required",
    }


class LeaveGroceryListRequest(Payload):
    grocery_list_id: NonBlankStr = Field(alias="groceryListId")

    field_messages: ClassVar[Dict[str, str]] = {
        "groceryListId": "A valid grocery list ID is required",
    }


class ImageRequest(Payload):
    image_url: NonBlankStr = Field(alias="imageUrl")
    user_id: Optional[str] = Field(default=None, alias="userId")

    field_messages: ClassVar[Dict[str, str]] = {
        "imageUrl": "imageUrl is required and must be a non-empty string",
    }

    @field_validator("image_url")
    @classmethod
    def _strip(cls, value):
        return value.strip()


class UploadReceiptRequest(Payload):
    content_type: str = Field(default="image/png", alias="contentType")
    extension: str = "png"


class DeleteReceiptRequest(Payload):
    filename: NonBlankStr

    field_messages: ClassVar[Dict[str, str]] = {"filename": "Filename is required"}


class TestPushRequest(Payload):
    push_tokens: List[StrictStr] = Field(alias="pushTokens", min_length=1)
    title: str = "Test Notification"
    body: str = "This is a test notification from Buyly"
    data: Dict[str, Any] = Field(default_factory=lambda: {"test": True})
    sound: str = "default"
    badge: Optional[int] = None
    channel_id: Optional[str] = Field(default=None, alias="channelId")
    priority: Optional[Literal["default", "normal", "high"]] = None

    field_messages: ClassVar[Dict[str, str]] = {
        "pushTokens": "pushTokens array is required and must not be empty",
    }
