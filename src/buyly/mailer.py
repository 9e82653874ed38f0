"""Email helpers: SMTP delivery and the app's HTML templates.

Usage:
- Configure SMTP via environment variables: `SMTP_HOST`, `SMTP_PORT`,
  `SMTP_USER`, `SMTP_PASS`. If not provided, will try local SMTP at localhost:25.
- Templates live in `buyly/templates/` and use `__PLACEHOLDER__` markers.

Functions:
- `send_email(to, subject, html, from_address)` - returns the Message-ID
- `send_budget_alert_email(email, alert, from_address)`
- `send_welcome_email(email, name, from_address)`
- `send_grocery_list_invite_email(email, inviter_name, list_name, from_address)`
"""

import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


def render_template(name: str, replacements: Dict[str, str]) -> str:
    """Read ``templates/<name>.html`` and substitute every placeholder.

    Values are HTML-escaped; they come from user-controlled fields such as
    display names and list titles.
    """
    body = (TEMPLATES_DIR / f"{name}.html").read_text(encoding="utf-8")
    for placeholder, value in replacements.items():
        body = body.replace(placeholder, escape(value))
    return body


def send_email(
    to_address: str,
    subject: str,
    html: str,
    from_address: Optional[str] = None,
) -> str:
    """Send an HTML email using SMTP. Reads config from environment variables.

    Falls back to localhost SMTP if no credentials are provided.

    Returns:
        The Message-ID of the sent message
    """
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_address or os.environ.get(
        "SMTP_USER", f"no-reply@{os.environ.get('HOSTNAME', 'localhost')}"
    )
    msg["To"] = to_address
    msg["Message-ID"] = make_msgid(domain="buyly.co.za")
    msg.set_content("This message requires an HTML-capable email client.")
    msg.add_alternative(html, subtype="html")

    smtp_host = os.environ.get("SMTP_HOST")
    smtp_port = int(os.environ.get("SMTP_PORT", "0") or 0)
    smtp_user = os.environ.get("SMTP_USER")
    smtp_pass = os.environ.get("SMTP_PASS")

    if smtp_host and smtp_port:
        if smtp_user and smtp_pass:
            with smtplib.SMTP_SSL(smtp_host, smtp_port) as s:
                s.login(smtp_user, smtp_pass)
                s.send_message(msg)
        else:
            with smtplib.SMTP(smtp_host, smtp_port) as s:
                s.send_message(msg)
    else:
        # Fallback to local sendmail/SMTP (localhost:25)
        with smtplib.SMTP("localhost") as s:
            s.send_message(msg)

    logger.info("Sent '%s' to %s", subject, to_address)
    return msg["Message-ID"]


@dataclass
class BudgetAlertEmail:
    user_name: str
    monthly_budget: float
    amount_spent: float
    percentage_spent: float


def send_budget_alert_email(
    email: str, alert: BudgetAlertEmail, from_address: Optional[str] = None
) -> str:
    remaining = alert.monthly_budget - alert.amount_spent
    html = render_template(
        "budget_alert",
        {
            "__USER_NAME__": alert.user_name,
            "__MONTHLY_BUDGET__": f"{alert.monthly_budget:.2f}",
            "__AMOUNT_SPENT__": f"{alert.amount_spent:.2f}",
            "__REMAINING_BUDGET__": f"{remaining:.2f}",
            "__PERCENTAGE_SPENT__": f"{alert.percentage_spent:.0f}",
        },
    )
    subject = f"Budget Alert: {alert.percentage_spent:.0f}% of your monthly budget used"
    return send_email(email, subject, html, from_address)


def send_welcome_email(email: str, name: str, from_address: Optional[str] = None) -> str:
    html = render_template("welcome", {"Hi there": f"Hi {name}"})
    return send_email(email, "Welcome to Buyly!", html, from_address)


def send_grocery_list_invite_email(
    email: str,
    inviter_name: str,
    grocery_list_name: str,
    from_address: Optional[str] = None,
) -> str:
    html = render_template(
        "grocery_list_invite",
        {
            "__INVITER_NAME__": inviter_name,
            "__GROCERY_LIST_NAME__": grocery_list_name,
            "__INVITED_EMAIL__": email,
        },
    )
    subject = f"{inviter_name} invited you to collaborate on {grocery_list_name}"
    return send_email(email, subject, html, from_address)
