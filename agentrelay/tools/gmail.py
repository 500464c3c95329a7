from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate
from typing import Any

from agentrelay.config import settings
from agentrelay.errors import CapabilityProviderError, CapabilityValidationError

from .base import Capability, CapabilityContext
from .google_api import api_request_json

logger = logging.getLogger(__name__)

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GOOGLE_PROVIDER = "google"
MAX_SUBJECT_CHARS = 200
MAX_BODY_CHARS = 10000
_EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}$", re.IGNORECASE)


@dataclass(frozen=True)
class SendEmailRequest:
    to: str
    subject: str
    body: str

    @classmethod
    def from_args(
        cls, args: dict[str, Any], allowed_domains: frozenset[str]
    ) -> "SendEmailRequest":
        to_addr = str(args.get("to") or "").strip().lower()
        if not to_addr:
            raise CapabilityValidationError("send_email: recipient 'to' is required.")
        if not _EMAIL_PATTERN.match(to_addr):
            raise CapabilityValidationError(f"send_email: '{to_addr}' is not a valid email address.")
        _enforce_allowed_recipient_domain(to_addr, allowed_domains)

        subject = re.sub(r"[\r\n]+", " ", str(args.get("subject") or "")).strip()
        if not subject:
            raise CapabilityValidationError("send_email: subject is required.")
        if len(subject) > MAX_SUBJECT_CHARS:
            raise CapabilityValidationError(
                f"send_email: subject must be at most {MAX_SUBJECT_CHARS} characters."
            )

        body = str(args.get("body") or "").strip()
        if not body:
            raise CapabilityValidationError("send_email: body is required.")
        if len(body) > MAX_BODY_CHARS:
            raise CapabilityValidationError(
                f"send_email: body must be at most {MAX_BODY_CHARS} characters."
            )
        return cls(to=to_addr, subject=subject, body=body)

    def to_rfc822_raw(self) -> str:
        msg = EmailMessage()
        msg["To"] = self.to
        msg["Subject"] = self.subject
        msg["Date"] = formatdate(localtime=True)
        msg.set_content(self.body)
        return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")


class GmailClient:
    def __init__(self, timeout_seconds: int = 8) -> None:
        self._timeout_seconds = max(1, timeout_seconds)

    def send(self, access_token: str, request: SendEmailRequest) -> dict[str, Any]:
        return api_request_json(
            url=GMAIL_SEND_URL,
            method="POST",
            access_token=access_token,
            timeout=self._timeout_seconds,
            service_name="Gmail",
            body={"raw": request.to_rfc822_raw()},
        )


class SendEmailCapability(Capability):
    name = "send_email"
    unavailable_message = "The email service is unavailable right now."

    def __init__(
        self,
        client: GmailClient | None = None,
        allowed_domains: tuple[str, ...] | None = None,
    ) -> None:
        self._client = client or GmailClient()
        domains = settings.email_allowed_recipient_domains if allowed_domains is None else allowed_domains
        self._allowed_domains = frozenset(d.strip().lower() for d in domains if d.strip())

    def run(self, args: dict[str, Any], context: CapabilityContext) -> dict[str, Any]:
        request = SendEmailRequest.from_args(args, self._allowed_domains)
        token = context.credential(GOOGLE_PROVIDER)
        if token is None:
            raise CapabilityProviderError(
                f"No Google token for caller {context.caller_id} agent {context.agent_id}.",
                user_message="Google account is not connected for this agent.",
            )
        sent = self._client.send(token, request)
        message_id = str(sent.get("id") or "").strip()
        if not message_id:
            raise CapabilityProviderError("Gmail returned an unexpected send payload.")
        logger.info(
            "Sent email %s for caller %s agent %s",
            message_id,
            context.caller_id,
            context.agent_id,
        )
        return {
            "message_id": message_id,
            "thread_id": str(sent.get("threadId") or "").strip() or None,
            "to": request.to,
            "message": "Email sent.",
        }


def _enforce_allowed_recipient_domain(to_addr: str, allowed_domains: frozenset[str]) -> None:
    if not allowed_domains:
        return
    domain = to_addr.split("@", 1)[1]
    if domain in allowed_domains:
        return
    raise CapabilityValidationError(
        f"send_email: recipient domain '{domain}' is not allowed. "
        f"Allowed domains: {', '.join(sorted(allowed_domains))}."
    )
