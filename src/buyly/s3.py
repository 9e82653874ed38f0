"""S3 helpers for Lambda deployment.

On Lambda there is no persistent filesystem, so the document store's SQLite
file and the error buffer live in S3 between invocations. This module
provides the download/upload helpers the handlers wrap around every run,
plus the client for the receipts bucket (any S3-compatible endpoint, e.g.
Cloudflare R2).

Invocations may overlap, so the store is never blindly overwritten: it is
uploaded only if the run wrote to it, and only if the S3 object still has
the ETag it had when this run downloaded it. When another invocation
uploaded in between, its version is downloaded, this run's journaled writes
are replayed onto it and the upload is tried again.

Required environment variables:
    S3_BUCKET  – the state bucket name (e.g. "buyly-functions-data")

Receipts bucket:
    RECEIPTS_BUCKET, RECEIPTS_ENDPOINT, RECEIPTS_ACCESS_KEY,
    RECEIPTS_SECRET_KEY, RECEIPTS_PUBLIC_BASE

Bucket layout:
    s3://<bucket>/buyly.db
    s3://<bucket>/logs/error_buffer.json
"""

import os
from pathlib import Path
from typing import Optional, Sequence

import boto3
from botocore.exceptions import ClientError

from buyly.config import require_env
from buyly.document_store import DocumentStore, JournalEntry
from buyly.errors import UpstreamError
from buyly.log import get_logger

logger = get_logger(__name__)

STORE_KEY = "buyly.db"
ERROR_BUFFER_KEY = "logs/error_buffer.json"
STORE_UPLOAD_ATTEMPTS = 5

_MISSING_CODES = ("404", "NoSuchKey")
_CONFLICT_CODES = ("412", "PreconditionFailed", "409", "ConditionalRequestConflict")


def _bucket() -> str:
    return os.environ.get("S3_BUCKET", "")


def _client():
    return boto3.client("s3")


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def download_file(s3_key: str, local_path: Path) -> Optional[str]:
    """Download a file from S3 to a local path.

    Returns:
        The object's ETag, or None if S3_BUCKET is unset or the object does
        not exist (any stale local copy is removed in that case)

    Raises:
        UpstreamError: for any other failure, so a run never continues on
            state it could not read
    """
    bucket = _bucket()
    if not bucket:
        logger.warning("S3_BUCKET not set, skipping download of %s", s3_key)
        return None
    try:
        response = _client().get_object(Bucket=bucket, Key=s3_key)
    except ClientError as e:
        if _error_code(e) in _MISSING_CODES:
            logger.info("s3://%s/%s not found (first run?)", bucket, s3_key)
            local_path.unlink(missing_ok=True)
            return None
        logger.error("Failed to download s3://%s/%s: %s", bucket, s3_key, e)
        raise UpstreamError(f"Could not read s3://{bucket}/{s3_key}") from e

    local_path.parent.mkdir(parents=True, exist_ok=True)
    with open(local_path, "wb") as f:
        f.write(response["Body"].read())
    logger.info("Downloaded s3://%s/%s → %s", bucket, s3_key, local_path)
    return response["ETag"]


def upload_file(local_path: Path, s3_key: str) -> bool:
    """Upload a local file to S3. Returns True on success."""
    bucket = _bucket()
    if not bucket:
        logger.warning("S3_BUCKET not set, skipping upload of %s", s3_key)
        return False
    if not local_path.exists():
        logger.warning("Local file %s does not exist, skipping upload", local_path)
        return False
    try:
        _client().upload_file(str(local_path), bucket, s3_key)
        logger.info("Uploaded %s → s3://%s/%s", local_path, bucket, s3_key)
        return True
    except ClientError as e:
        logger.error("Failed to upload %s: %s", s3_key, e)
        return False


def _put_if_unchanged(local_path: Path, s3_key: str, etag: Optional[str]) -> bool:
    """Upload only if the object still has ``etag`` (None: still absent).

    Returns False when another writer changed the object first.
    """
    bucket = _bucket()
    condition = {"IfMatch": etag} if etag else {"IfNoneMatch": "*"}
    try:
        with open(local_path, "rb") as f:
            _client().put_object(Bucket=bucket, Key=s3_key, Body=f, **condition)
    except ClientError as e:
        if _error_code(e) in _CONFLICT_CODES:
            return False
        logger.error("Failed to upload %s: %s", s3_key, e)
        raise UpstreamError(f"Could not write s3://{bucket}/{s3_key}") from e
    logger.info("Uploaded %s → s3://%s/%s", local_path, bucket, s3_key)
    return True


def sync_data_from_s3(data_dir: Path) -> Optional[str]:
    """Pull buyly.db and the error buffer from S3 into local data_dir.

    Returns:
        The store's ETag, to be handed back to ``push_store``

    Raises:
        UpstreamError: if either object exists but could not be read
    """
    etag = download_file(STORE_KEY, data_dir / STORE_KEY)
    download_file(ERROR_BUFFER_KEY, data_dir / "logs" / "error_buffer.json")
    return etag


def push_store(data_dir: Path, etag: Optional[str], journal: Sequence[JournalEntry]) -> None:
    """Upload buyly.db if this run wrote to it, merging with concurrent runs.

    Args:
        data_dir: Directory holding buyly.db
        etag: ETag returned by ``sync_data_from_s3``
        journal: The writes this run made (``DocumentStore.journal``)

    Raises:
        UpstreamError: if the upload fails, or the object kept changing for
            STORE_UPLOAD_ATTEMPTS attempts
    """
    if not journal:
        logger.debug("No writes this run, leaving s3://%s/%s untouched", _bucket(), STORE_KEY)
        return
    if not _bucket():
        logger.warning("S3_BUCKET not set, skipping upload of %s", STORE_KEY)
        return

    local_path = data_dir / STORE_KEY
    for attempt in range(1, STORE_UPLOAD_ATTEMPTS + 1):
        if _put_if_unchanged(local_path, STORE_KEY, etag):
            return
        logger.warning(
            "%s changed since download, merging %d writes (attempt %d)",
            STORE_KEY, len(journal), attempt,
        )
        etag = download_file(STORE_KEY, local_path)
        with DocumentStore(local_path) as store:
            store.replay(journal)

    logger.error("Gave up uploading %s after %d attempts", STORE_KEY, STORE_UPLOAD_ATTEMPTS)
    raise UpstreamError(f"{STORE_KEY} kept changing during upload")


def push_error_buffer(data_dir: Path) -> None:
    """Mirror the local error buffer to S3.

    Once the digest has drained the buffer there is no local file, and the
    S3 copy is deleted so the next invocation does not download it again.
    """
    bucket = _bucket()
    if not bucket:
        return
    error_buffer = data_dir / "logs" / "error_buffer.json"
    if error_buffer.exists():
        upload_file(error_buffer, ERROR_BUFFER_KEY)
        return
    try:
        _client().delete_object(Bucket=bucket, Key=ERROR_BUFFER_KEY)
    except ClientError as e:
        logger.warning("Failed to delete s3://%s/%s: %s", bucket, ERROR_BUFFER_KEY, e)


# ---------------------------------------------------------------------------
# Receipts bucket
# ---------------------------------------------------------------------------


def receipts_client():
    """Client for the S3-compatible receipts bucket.

    Raises:
        ConfigurationError: if the endpoint or credentials are missing
    """
    endpoint, access_key, secret_key = require_env(
        "RECEIPTS_ENDPOINT", "RECEIPTS_ACCESS_KEY", "RECEIPTS_SECRET_KEY"
    )
    return boto3.client(
        "s3",
        region_name="auto",
        endpoint_url=endpoint,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
    )


def receipts_bucket() -> str:
    (bucket,) = require_env("RECEIPTS_BUCKET")
    return bucket


def presigned_put_url(key: str, content_type: str, expires_in: int) -> str:
    """Presigned URL the client app PUTs the image bytes to."""
    return receipts_client().generate_presigned_url(
        "put_object",
        Params={"Bucket": receipts_bucket(), "Key": key, "ContentType": content_type},
        ExpiresIn=expires_in,
    )


def delete_object(key: str) -> None:
    receipts_client().delete_object(Bucket=receipts_bucket(), Key=key)
    logger.info("Deleted receipt object %s", key)
