"""Email service - transactional email via Resend"""
import html as html_lib
import logging
from urllib.parse import quote

import resend

from app.core.config import settings, CLAIM_ACCOUNT_URL

logger = logging.getLogger(__name__)


def validate_email_config() -> tuple[bool, str]:
    """
    Validate email service configuration.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not settings.RESEND_API_KEY:
        return False, "RESEND_API_KEY is not set in environment variables"

    if not settings.FRONTEND_URL:
        return False, "FRONTEND_URL is not set in environment variables"

    return True, ""


def _send_email(to: str, subject: str, html: str) -> bool:
    """
    Send one email through the Resend API.

    Email is best-effort: failures are logged and reported as False, never raised,
    so callers that already committed a payment record are unaffected.

    Returns:
        bool: True on success, False on failure
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return False

    try:
        resend.api_key = settings.RESEND_API_KEY
        response = resend.Emails.send(
            {
                "from": settings.EMAIL_FROM,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )

        # Resend returns a dict with 'id' (older SDKs return an object)
        email_id = response.get('id') if isinstance(response, dict) else getattr(response, 'id', None)
        if email_id:
            logger.info(f"Email sent to {to} (id: {email_id})")
            return True

        logger.error(f"Email send returned invalid response: {response}")
        return False

    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False


def build_claim_link(token: str) -> str:
    return f"{CLAIM_ACCOUNT_URL}?token={quote(token)}"


def send_claim_account_email(email: str, token: str, ttl_days: int) -> bool:
    """Invite a guest buyer to set a password on the account created at checkout"""
    claim_link = build_claim_link(token)

    html = f"""
    <p>Thanks for your purchase!</p>
    <p>We created an account for <strong>{html_lib.escape(email)}</strong> so you can get back to what you bought.
    Set a password to finish claiming it:</p>
    <p style="margin: 20px 0;">
      <a href="{claim_link}" target="_blank" rel="noopener noreferrer"
         style="display: inline-block; padding: 12px 24px; background-color: #5b4cdb; color: white; text-decoration: none; border-radius: 4px; font-weight: bold;">
        Claim your account
      </a>
    </p>
    <p>This link expires in {ttl_days} days. Requesting a new link invalidates older ones.</p>
    <p style="color: #999; font-size: 12px; margin-top: 20px;">
      Or copy and paste this link into your browser:<br/>
      {claim_link}
    </p>
    """

    return _send_email(email, "Claim your account", html)


def send_notification_email(email: str, subject: str, body: str) -> bool:
    """Plain notification email mirroring an in-app notification"""
    html = f"<p>{html_lib.escape(body or subject)}</p>"
    return _send_email(email, subject, html)
