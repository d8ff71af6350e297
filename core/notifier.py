"""
Admin notifications over SMTP.

Every public method swallows delivery errors after logging them; callers
treat notifications as a fire-and-forget side channel.
"""
import logging
import smtplib
from email.mime.text import MIMEText
from typing import List, Optional

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_address: str = "",
        admin_email: str = "",
        timeout: int = 15,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.admin_email = admin_email
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "Notifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_address=settings.from_address,
            admin_email=settings.admin_email,
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def quota_exceeded(self, call_count: int, quota_limit: int, month: int, year: int) -> bool:
        subject = f"Profile API monthly quota exceeded ({call_count}/{quota_limit})"
        body = (
            f"The profile API quota for {month:02d}/{year} has been exhausted "
            f"({call_count} of {quota_limit} calls).\n\n"
            "Profile fetching is paused and resumes automatically on the 1st of next month. "
            "Enable the quota override to continue sooner."
        )
        return self.send(subject, body)

    def override_changed(self, enabled: bool) -> bool:
        state = "enabled" if enabled else "disabled"
        subject = "Profile API quota override status changed"
        body = f"The API quota override has been {state}."
        return self.send(subject, body)

    def quota_reset(self, month: int, year: int, quota_limit: int) -> bool:
        subject = "Monthly profile API quota reset"
        body = (
            f"The profile API quota has been reset for {month:02d}/{year}.\n"
            f"Available calls: {quota_limit} / {quota_limit}"
        )
        return self.send(subject, body)

    def run_summary(
        self,
        job_name: str,
        status: str,
        duration_seconds: int,
        total_processed: int,
        successful: int,
        failed: int,
        api_calls_made: int,
        quota_remaining: int,
        errors: List[str],
        recipient: Optional[str] = None,
    ) -> bool:
        subject = f"{job_name} run finished: {status}"
        lines = [
            f"Job: {job_name}",
            f"Status: {status}",
            f"Duration: {duration_seconds}s",
            f"Total processed: {total_processed}",
            f"Successful: {successful}",
            f"Failed: {failed}",
            f"API calls made: {api_calls_made}",
            f"Quota remaining: {quota_remaining}",
        ]
        if errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  - {e}" for e in errors)
        return self.send(subject, "\n".join(lines), recipient=recipient)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def send(self, subject: str, body: str, recipient: Optional[str] = None) -> bool:
        """Send one plain-text message. Returns True when delivered."""
        to_email = recipient or self.admin_email
        if not self.smtp_host or not to_email:
            logger.info("[NOTIFY] (not sent, SMTP not configured) %s", subject)
            return False

        msg = MIMEText(body, "plain")
        msg["From"] = self.from_address or to_email
        msg["To"] = to_email
        msg["Subject"] = subject

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(msg["From"], [to_email], msg.as_string())
            logger.info("[NOTIFY] Sent '%s' to %s", subject, to_email)
            return True
        except smtplib.SMTPAuthenticationError:
            logger.error("[NOTIFY] SMTP auth failed. Check SMTP_USERNAME/SMTP_PASSWORD.")
            return False
        except Exception as exc:
            logger.error("[NOTIFY] Failed to send '%s' to %s: %s", subject, to_email, exc)
            return False
