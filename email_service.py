"""Outbound e-mail through the SendGrid v3 HTTP API.

Every public method returns ``True`` when the provider accepted the message
and ``False`` otherwise.  Failures are logged here and never raised.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


def _fmt_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


# Email templates
TEMPLATES = {
    "book_available": lambda book, expiry_date: {
        "subject": f"Book Available: {book.title}",
        "body": (
            "<h2>Your Reserved Book is Available</h2>"
            "<p>Great news! The book you requested is now available for pickup:</p>"
            f"<p><strong>{book.title}</strong> by {book.author}</p>"
            f"<p>Book Location: {book.location}</p>"
            f"<p>Please pick up your book by <strong>{_fmt_date(expiry_date)}</strong>. "
            "If not picked up by this date, your reservation will expire and the book "
            "will be made available to other users.</p>"
        ),
    },
    "due_reminder": lambda book, due_date: {
        "subject": f"Reminder: Book Due Soon - {book.title}",
        "body": (
            "<h2>Book Due Reminder</h2>"
            "<p>This is a friendly reminder that the following book is due soon:</p>"
            f"<p><strong>{book.title}</strong> by {book.author}</p>"
            f"<p>Due Date: <strong>{_fmt_date(due_date)}</strong></p>"
            "<p>Please return the book to the library by the due date to avoid any late fees.</p>"
        ),
    },
    "research_paper": lambda title, author, link: {
        "subject": f"Research Paper: {title}",
        "body": (
            "<h2>Research Paper Shared</h2>"
            "<p>As requested, here is the research paper:</p>"
            f"<p><strong>{title}</strong> by {author}</p>"
            f'<p>You can download the paper using this link: <a href="{link}">{link}</a></p>'
        ),
    },
}


class EmailService:
    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None,
                 api_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.api_key = api_key if api_key is not None else settings.sendgrid_api_key
        self.from_email = from_email or settings.email_from
        self.api_url = api_url or settings.sendgrid_api_url
        self.timeout = timeout if timeout is not None else settings.email_timeout
        if not self.api_key:
            logger.warning("SENDGRID_API_KEY is not set; e-mail notifications will not be sent.")

    def _payload(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }

    def send_email(self, to: str, subject: str, html: str) -> bool:
        if not self.api_key:
            logger.info("[EMAIL NOT SENT - NO API KEY] To: %s, Subject: %s", to, subject)
            return False

        try:
            resp = httpx.post(
                self.api_url,
                json=self._payload(to, subject, html),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            logger.error("Failed to send email to %s: %s", to, exc)
            return False

        if resp.status_code >= 400:
            logger.error("Email provider rejected message to %s (HTTP %s)", to, resp.status_code)
            return False

        logger.info("Email sent to %s: %s", to, subject)
        return True

    def send_book_available(self, user, book, reservation) -> bool:
        """Tell a user their reserved book is ready for pickup."""
        template = TEMPLATES["book_available"](book, reservation.expiry_date)
        return self.send_email(user.email, template["subject"], template["body"])

    def send_due_reminder(self, user, book, due_date: datetime) -> bool:
        template = TEMPLATES["due_reminder"](book, due_date)
        return self.send_email(user.email, template["subject"], template["body"])

    def share_research_paper(self, to_email: str, title: str, author: str, link: str) -> bool:
        template = TEMPLATES["research_paper"](title, author, link)
        return self.send_email(to_email, template["subject"], template["body"])
