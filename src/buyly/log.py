"""Logging configuration for buyly.

Provides:
- Stream logging (CloudWatch on Lambda), level taken from LOG_LEVEL
- File-based logging to data/logs/buyly.log
- An error buffer: every ERROR record is appended to
  data/logs/error_buffer.json, and ``send_error_digest`` drains it into one
  email to the ops address at the end of each invocation.

Usage:
    from buyly.log import get_logger, send_error_digest

    logger = get_logger(__name__)
    logger.info("Something happened")
    logger.error("Something went wrong")

    # Call at the end of a handler, before the buffer is synced to S3
    send_error_digest()
"""

import html
import json
import logging
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Optional, Tuple

from buyly.utils import data_dir

LOG_DIR = data_dir("logs")
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "buyly.log"
ERROR_BUFFER_FILE = LOG_DIR / "error_buffer.json"


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        formatter = logging.Formatter(
            "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
        sh = logging.StreamHandler()
        sh.setLevel(getattr(logging, level_name, logging.INFO))
        sh.setFormatter(formatter)
        logger.addHandler(sh)

        fh = logging.FileHandler(LOG_FILE)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

        bh = _ErrorBufferHandler()
        bh.setLevel(logging.ERROR)
        bh.setFormatter(formatter)
        logger.addHandler(bh)

        logger.propagate = False

    return logger


class _ErrorBufferHandler(logging.Handler):
    """Appends ERROR+ records to ``ERROR_BUFFER_FILE`` as JSON lines."""

    def emit(self, record):
        try:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "function": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", "local"),
                "message": self.format(record),
            }
            ERROR_BUFFER_FILE.parent.mkdir(parents=True, exist_ok=True)
            with open(ERROR_BUFFER_FILE, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except Exception:
            self.handleError(record)


def drain_error_buffer() -> list[dict]:
    """Read every buffered error and delete the buffer file."""
    if not ERROR_BUFFER_FILE.exists():
        return []

    entries = []
    for line in ERROR_BUFFER_FILE.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            entries.append({"message": line})

    ERROR_BUFFER_FILE.unlink(missing_ok=True)
    return entries


def format_error_digest(errors: list[dict], now: Optional[datetime] = None) -> Tuple[str, str]:
    """Subject and HTML body for a digest of ``errors``.

    The body opens with a per-function, per-logger tally so a burst from one
    handler stands out, followed by every message in the order logged.
    """
    now = now or datetime.now(timezone.utc)
    tally = Counter(
        (err.get("function", "unknown"), err.get("logger", "unknown")) for err in errors
    )
    noun = "error" if len(errors) == 1 else "errors"
    subject = f"Buyly Functions: {len(errors)} {noun} ({now.strftime('%Y-%m-%d')})"

    lines = [f"Errors collected: {len(errors)}", f"Report time: {now.isoformat()}", ""]
    for (function, logger_name), count in tally.most_common():
        lines.append(f"{count:>5}  {function}  {logger_name}")
    lines.append("=" * 60)
    for err in errors:
        lines.append(err.get("message", str(err)))
        lines.append("-" * 60)

    return subject, "<pre>" + html.escape("\n".join(lines)) + "</pre>"


def send_error_digest() -> bool:
    """Email the buffered errors to ``email.ops_address`` and empty the buffer.

    The buffer is emptied even when no ops address is configured or the send
    fails, so one bad invocation never re-sends on every later one.

    Returns:
        True if a digest email was sent
    """
    errors = drain_error_buffer()
    if not errors:
        return False

    from buyly.config import load_settings
    from buyly.mailer import send_email

    ops_address = load_settings()["email"].get("ops_address")
    if not ops_address:
        return False

    subject, body = format_error_digest(errors)
    try:
        send_email(ops_address, subject, body)
    except Exception as e:
        # Already in the log file; logging at ERROR would refill the buffer
        get_logger("buyly.log").warning("Failed to send error digest: %s", e)
        return False
    return True
