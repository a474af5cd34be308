import logging
from html import escape
from typing import Iterable, List, Optional

from fastapi import Request
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = logging.getLogger(__name__)


def _zip_list(zip_codes: Iterable[str]) -> str:
    codes = list(zip_codes)
    return escape(", ".join(codes)) if codes else "—"


class EmailService:
    """
    Centralized email utility for LeadZone.
    Sends ops and client notifications via SendGrid; every send is best-effort.
    """

    def __init__(self, api_key: Optional[str], sender_email: Optional[str], ops_recipients: Optional[List[str]] = None):
        self.sendgrid_api_key = api_key
        self.sender_email = sender_email
        self.ops_recipients = ops_recipients or []

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(settings.SENDGRID_API_KEY, settings.MAIL_FROM, settings.OPS_RECIPIENTS)

    # ============================================================
    # ✉️ Core send (synchronous for BackgroundTasks)
    # ============================================================
    def send(self, to_emails: List[str], subject: str, html_content: str) -> bool:
        recipients = [e for e in to_emails if e]
        if not recipients:
            logger.info(f"📭 No recipients for '{subject}', skipping.")
            return False

        if not self.enabled:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Email] To: {', '.join(recipients)} | Subject: {subject}")
            return True

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=recipients,
                subject=subject,
                html_content=html_content,
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            logger.info(f"✅ Email '{subject}' sent to {', '.join(recipients)}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception("❌ Failed to send email '%s' to %s: %s", subject, recipients, e)
            return False

    # ============================================================
    # 🗺️ Zip change requests
    # ============================================================
    def send_zip_change_request_notification(
        self,
        portal_key: str,
        organization_name: str,
        request_id: str,
        added_zip_codes: List[str],
        removed_zip_codes: List[str],
        requested_by_email: Optional[str],
        reason: Optional[str],
    ) -> bool:
        subject = f"ZIP change request: {organization_name} (+{len(added_zip_codes)} / -{len(removed_zip_codes)})"
        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>New territory change request</h2>
            <p><strong>{escape(organization_name)}</strong> ({escape(portal_key)}) submitted request
            <code>{escape(request_id)}</code>.</p>
            <p><strong>Adding:</strong> {_zip_list(added_zip_codes)}</p>
            <p><strong>Removing:</strong> {_zip_list(removed_zip_codes)}</p>
            <p><strong>Requested by:</strong> {escape(requested_by_email or "unknown")}</p>
            <p><strong>Reason:</strong> {escape(reason or "—")}</p>
            <p>Run a conflict check before approving.</p>
        </div>
        """
        return self.send(self.ops_recipients, subject, html_content)

    def send_zip_change_resolution_notice(
        self,
        to_email: Optional[str],
        organization_name: str,
        decision: str,
        target_zip_codes: List[str],
        resolution_notes: Optional[str],
    ) -> bool:
        approved = decision == "approve"
        subject = f"Your ZIP change request was {'approved' if approved else 'declined'}"
        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>👋 Hello {escape(organization_name)}!</h2>
            <p>Your territory change request was <strong>{'approved' if approved else 'declined'}</strong>.</p>
            {f"<p><strong>Your ZIP codes:</strong> {_zip_list(target_zip_codes)}</p>" if approved else ""}
            {f"<p><strong>Notes:</strong> {escape(resolution_notes)}</p>" if resolution_notes else ""}
            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>Best regards,<br><strong>The LeadZone Team</strong></p>
        </div>
        """
        return self.send([to_email] if to_email else [], subject, html_content)

    # ============================================================
    # 💳 Billing activation
    # ============================================================
    def send_activation_notices(
        self,
        customer_email: Optional[str],
        organization_name: str,
        portal_key: str,
        billing_model_label: str,
        amount_cents: Optional[int],
        checkout_session_id: str,
    ) -> bool:
        amount = f"${(amount_cents or 0) / 100:,.2f}"

        customer_html = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>🎉 Payment received</h2>
            <p>Thanks, <strong>{escape(organization_name)}</strong>. We received your payment of {amount}.</p>
            <p>Plan: {escape(billing_model_label)}</p>
            <p>Your lead campaign is now being set up. We'll be in touch shortly.</p>
            <p>Best regards,<br><strong>The LeadZone Team</strong></p>
        </div>
        """
        ops_html = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>Leadgen payment activated</h2>
            <p><strong>{escape(organization_name)}</strong> ({escape(portal_key)}) paid {amount}.</p>
            <p>Plan: {escape(billing_model_label)}</p>
            <p>Checkout session: <code>{escape(checkout_session_id)}</code></p>
        </div>
        """
        customer_sent = self.send(
            [customer_email] if customer_email else [], "Your LeadZone payment was received", customer_html
        )
        ops_sent = self.send(self.ops_recipients, f"Leadgen paid: {organization_name}", ops_html)
        return customer_sent and ops_sent

    # ============================================================
    # 🧾 Portal profile edits
    # ============================================================
    def send_profile_change_notification(
        self,
        portal_key: str,
        organization_name: str,
        actor_label: Optional[str],
        changed_keys: List[str],
        added_zip_codes: List[str],
        removed_zip_codes: List[str],
    ) -> bool:
        subject = f"Portal profile updated: {organization_name}"
        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>Portal profile updated</h2>
            <p><strong>{escape(organization_name)}</strong> ({escape(portal_key)}) edited by {escape(actor_label or "operator")}.</p>
            <p><strong>Changed:</strong> {escape(", ".join(changed_keys) or "—")}</p>
            <p><strong>ZIPs added:</strong> {_zip_list(added_zip_codes)}</p>
            <p><strong>ZIPs removed:</strong> {_zip_list(removed_zip_codes)}</p>
        </div>
        """
        return self.send(self.ops_recipients, subject, html_content)


def get_email_service(request: Request) -> EmailService:
    return request.app.state.email_service
