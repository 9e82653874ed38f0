import io
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from buyly import s3
from buyly.auth import AuthProvider, AuthUser
from buyly.config import load_settings
from buyly.document_store import DocumentStore

# Mid-month so the month window is unaffected by the server's timezone
NOW = datetime(2025, 3, 15, 12, 0, 0)


@pytest.fixture
def store(tmp_path):
    s = DocumentStore(tmp_path / "buyly.db")
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path):
    """Built-in defaults, ignoring any settings.yaml on disk."""
    return load_settings(tmp_path / "missing.yaml")


@pytest.fixture
def auth():
    provider = MagicMock(spec=AuthProvider)
    provider.get_user.return_value = AuthUser(
        uid="user-1", email="thandi@example.com", display_name="Thandi"
    )
    return provider


@pytest.fixture
def now():
    return NOW


class FakeBucket:
    """In-memory S3 state bucket honouring IfMatch / IfNoneMatch on put."""

    def __init__(self):
        self.objects = {}
        self.versions = {}
        self.fail_reads_with = None
        self.before_put = None

    @staticmethod
    def _error(code, operation):
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    def etag(self, key):
        return f'"v{self.versions[key]}"'

    def write(self, key, data: bytes):
        self.objects[key] = data
        self.versions[key] = self.versions.get(key, 0) + 1

    def get_object(self, Bucket, Key):
        if self.fail_reads_with:
            raise self._error(self.fail_reads_with, "GetObject")
        if Key not in self.objects:
            raise self._error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key]), "ETag": self.etag(Key)}

    def put_object(self, Bucket, Key, Body, IfMatch=None, IfNoneMatch=None):
        if self.before_put:
            hook, self.before_put = self.before_put, None
            hook()
        if IfNoneMatch == "*" and Key in self.objects:
            raise self._error("PreconditionFailed", "PutObject")
        if IfMatch is not None and (Key not in self.objects or self.etag(Key) != IfMatch):
            raise self._error("PreconditionFailed", "PutObject")
        self.write(Key, Body.read())

    def upload_file(self, Filename, Bucket, Key):
        self.write(Key, Path(Filename).read_bytes())

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    # Helpers for seeding and inspecting the store object

    def seed_store(self, tmp_path, **users):
        path = tmp_path / "seed.db"
        path.unlink(missing_ok=True)
        with DocumentStore(path) as seed:
            for uid, data in users.items():
                seed.set("users", uid, data)
        self.write(s3.STORE_KEY, path.read_bytes())

    def stored_users(self, tmp_path):
        path = tmp_path / "inspect.db"
        path.write_bytes(self.objects[s3.STORE_KEY])
        with DocumentStore(path) as copy:
            return {snap.id: snap.data for snap in copy.query("users")}


@pytest.fixture
def bucket(monkeypatch):
    fake = FakeBucket()
    monkeypatch.setenv("S3_BUCKET", "buyly-test-state")
    monkeypatch.setattr(s3, "_client", lambda: fake)
    return fake
