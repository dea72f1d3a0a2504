from __future__ import annotations

import html
import smtplib
import ssl
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from email.message import EmailMessage
from typing import Any, Callable, Iterator, List, Optional, Set, Tuple

from schoolauth.logging import get_logger
from schoolauth.storage.models import Identity

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_PAGE = """<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; color: #1f2933; max-width: 600px; margin: 0 auto;">
{content}
<p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{sender}</p>
</body>
</html>
"""
_BUTTON = (
    '<p><a href="{url}" style="background: #2563eb; color: #fff; padding: 12px 24px; '
    'border-radius: 8px; text-decoration: none;">{label}</a></p>\n'
    "<p>Or open this link: {url}</p>"
)


def _redact_email(email: str) -> str:
    """``alice@school-a.edu`` -> ``al***@school-a.edu``."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional email over SMTP.

    Without an SMTP host the message is logged instead of sent, so local
    and test setups work with no mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "School Management",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        title: str,
        paragraphs: List[str],
        action: Optional[Tuple[str, str]] = None,
    ) -> Tuple[str, str]:
        """Return (html, text) bodies for a notice with an optional link button."""
        blocks = [f"<h1>{html.escape(title)}</h1>"]
        blocks += [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        lines = [title, *paragraphs]
        if action:
            label, url = action
            blocks.append(
                _BUTTON.format(url=html.escape(url, quote=True), label=html.escape(label))
            )
            lines.append(url)
        html_body = _PAGE.format(
            content="\n".join(blocks), sender=html.escape(self.from_name)
        )
        text_body = "\n\n".join(lines) + f"\n\n-- \n{self.from_name}\n"
        return html_body, text_body

    @contextmanager
    def _session(self) -> Iterator[smtplib.SMTP]:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            yield server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; False when the SMTP exchange fails."""
        recipient = _redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.set_content(text_body or "")
        message.add_alternative(html_body, subtype="html")

        try:
            with self._session() as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed", to=recipient, host=self.smtp_host, smtp_code=exc.smtp_code
            )
            return False
        except (smtplib.SMTPException, OSError) as exc:
            # Socket and TLS errors surface as OSError
            logger.error(
                "email_delivery_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_email_verification(self, identity: Identity) -> bool:
        token = identity.email_verification_token
        if not token:
            logger.warning("email_verification_without_token", identity_id=identity.id)
            return False
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"Hello {identity.full_name or identity.username},",
                "Confirm this address to finish setting up your school account.",
            ],
            ("Verify Email", verify_url),
        )
        return self._send_email(
            identity.email,
            f"[{self.from_name}] Confirm your email address",
            html_body,
            text_body,
        )

    def send_password_reset_email(
        self, identity: Identity, token: str, expiry_minutes: int = 60
    ) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "Someone asked to reset the password for this school account.",
                f"This link will expire in {expiry_minutes} minutes.",
                "Ignore this message if it was not you; your password stays the same.",
            ],
            ("Reset Password", reset_url),
        )
        return self._send_email(
            identity.email,
            f"[{self.from_name}] Password reset",
            html_body,
            text_body,
        )

    def send_password_change_confirmation(self, identity: Identity) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your school account has just been changed.",
                "Contact your school administrator if you did not do this.",
            ],
        )
        return self._send_email(
            identity.email,
            f"[{self.from_name}] Your password was changed",
            html_body,
            text_body,
        )

    def send_account_locked_email(self, identity: Identity, lock_minutes: int) -> bool:
        html_body, text_body = self._render(
            "Your account has been locked",
            [
                "Your account was locked after too many failed sign-in attempts.",
                f"Sign-in is blocked for the next {lock_minutes} minutes.",
                "Reset your password once the lock lifts if these attempts were not yours.",
            ],
        )
        return self._send_email(
            identity.email,
            f"[{self.from_name}] Account temporarily locked",
            html_body,
            text_body,
        )


class EmailDispatcher:
    """Fire-and-forget front for :class:`EmailService`.

    Each ``send_*`` call is queued on a worker pool and returns immediately.
    Any exception raised while sending is logged in the worker and never
    reaches the caller.
    """

    def __init__(
        self,
        email: EmailService,
        *,
        max_workers: int = 2,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.email = email
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="email"
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def _run(self, kind: str, fn: Callable[..., Any], identity_id: str, *args: Any) -> None:
        try:
            sent = fn(*args)
        except Exception as exc:
            logger.error(
                "email_dispatch_failed",
                kind=kind,
                identity_id=identity_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if sent is False:
            logger.warning("email_not_delivered", kind=kind, identity_id=identity_id)

    def _submit(self, kind: str, fn: Callable[..., Any], identity: Identity, *args: Any) -> None:
        try:
            future = self._executor.submit(self._run, kind, fn, identity.id, identity, *args)
        except RuntimeError as exc:
            # Executor already shut down
            logger.error("email_dispatch_rejected", kind=kind, error=str(exc))
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def send_email_verification(self, identity: Identity) -> None:
        self._submit("email_verification", self.email.send_email_verification, identity)

    def send_password_reset_email(
        self, identity: Identity, token: str, expiry_minutes: int = 60
    ) -> None:
        self._submit(
            "password_reset",
            self.email.send_password_reset_email,
            identity,
            token,
            expiry_minutes,
        )

    def send_password_change_confirmation(self, identity: Identity) -> None:
        self._submit(
            "password_change", self.email.send_password_change_confirmation, identity
        )

    def send_account_locked_email(self, identity: Identity, lock_minutes: int) -> None:
        self._submit(
            "account_locked", self.email.send_account_locked_email, identity, lock_minutes
        )

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued sends; True when none remain pending."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)
