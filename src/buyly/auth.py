"""Auth provider backed by an AWS Cognito user pool.

Required environment variables:
    COGNITO_USER_POOL_ID – the user pool holding the app's accounts

Custom claims are stored as ``custom:<name>`` user attributes; the admin
role is ``custom:role = admin``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import ClientError

from buyly.config import require_env
from buyly.document_store import DocumentSnapshot, DocumentStore
from buyly.errors import NotFoundError

logger = logging.getLogger(__name__)

# Cognito's ListUsers page size ceiling
LIST_USERS_PAGE_SIZE = 60


@dataclass
class AuthUser:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False
    disabled: bool = False
    phone_number: Optional[str] = None
    created_at: Optional[str] = None
    last_modified_at: Optional[str] = None
    custom_claims: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "emailVerified": self.email_verified,
            "displayName": self.display_name,
            "phoneNumber": self.phone_number,
            "disabled": self.disabled,
            "metadata": {
                "creationTime": self.created_at,
                "lastRefreshTime": self.last_modified_at,
            },
            "customClaims": self.custom_claims,
        }


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else value


def _to_auth_user(record: Dict[str, Any], attributes_key: str) -> AuthUser:
    attributes = {a["Name"]: a["Value"] for a in record.get(attributes_key, [])}
    return AuthUser(
        uid=attributes.get("sub") or record["Username"],
        email=attributes.get("email"),
        display_name=attributes.get("name"),
        email_verified=attributes.get("email_verified") == "true",
        disabled=not record.get("Enabled", True),
        phone_number=attributes.get("phone_number"),
        created_at=_isoformat(record.get("UserCreateDate")),
        last_modified_at=_isoformat(record.get("UserLastModifiedDate")),
        custom_claims={
            name[len("custom:"):]: value
            for name, value in attributes.items()
            if name.startswith("custom:")
        },
    )


class AuthProvider:
    """Thin wrapper over the Cognito admin API."""

    def __init__(self, user_pool_id: Optional[str] = None, client=None):
        if user_pool_id is None:
            (user_pool_id,) = require_env("COGNITO_USER_POOL_ID")
        self.user_pool_id = user_pool_id
        self.client = client or boto3.client("cognito-idp")

    def get_user(self, uid: str) -> AuthUser:
        """Look up a user by id.

        Raises:
            NotFoundError: if the pool has no such user
        """
        try:
            record = self.client.admin_get_user(UserPoolId=self.user_pool_id, Username=uid)
        except ClientError as e:
            if e.response["Error"]["Code"] == "UserNotFoundException":
                raise NotFoundError(f"No auth user with id {uid}")
            raise
        return _to_auth_user(record, "UserAttributes")

    def list_users(self, page_size: int = LIST_USERS_PAGE_SIZE) -> Iterator[AuthUser]:
        """Iterate over every user in the pool, one page at a time."""
        paginator = self.client.get_paginator("list_users")
        pages = paginator.paginate(
            UserPoolId=self.user_pool_id,
            PaginationConfig={"PageSize": page_size},
        )
        for page_number, page in enumerate(pages, start=1):
            users = page.get("Users", [])
            logger.info("Fetched %d users from page %d", len(users), page_number)
            for record in users:
                yield _to_auth_user(record, "Attributes")

    def set_custom_claims(self, uid: str, claims: Dict[str, str]) -> None:
        self.client.admin_update_user_attributes(
            UserPoolId=self.user_pool_id,
            Username=uid,
            UserAttributes=[
                {"Name": f"custom:{name}", "Value": str(value)} for name, value in claims.items()
            ],
        )

    def delete_custom_claims(self, uid: str, names: List[str]) -> None:
        self.client.admin_delete_user_attributes(
            UserPoolId=self.user_pool_id,
            Username=uid,
            UserAttributeNames=[f"custom:{name}" for name in names],
        )


def set_admin(auth: AuthProvider, uid: str) -> Dict[str, str]:
    """Give a user the admin role. Returns the user's claims afterwards."""
    auth.set_custom_claims(uid, {"role": "admin"})
    logger.info("Set user %s as admin", uid)
    return auth.get_user(uid).custom_claims


def revoke_admin(auth: AuthProvider, uid: str) -> Dict[str, str]:
    """Remove the admin role if the user has it. Returns the claims afterwards."""
    claims = auth.get_user(uid).custom_claims
    if claims.get("role") == "admin":
        auth.delete_custom_claims(uid, ["role"])
        logger.info("Revoked admin privileges for user %s", uid)
    else:
        logger.info("User %s does not have admin role to revoke", uid)
    return auth.get_user(uid).custom_claims


def find_user_by_email(store: DocumentStore, email: str) -> Optional[DocumentSnapshot]:
    """Find a user through the ``users`` collection mirror (lower-cased emails)."""
    matches = store.query("users", [("email", "==", email.strip().lower())], limit=1)
    return matches[0] if matches else None
