import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = logging.getLogger(__name__)


class SendGridNotifier:
    """Donor thank-you and admin notification emails.

    Every message is sent on its own; a failure is logged and the remaining
    messages still go out. Nothing here raises.
    """

    def __init__(self, api_key, from_email, admin_emails=(), org_name="Gomantak Gausevak"):
        self.api_key = api_key
        self.from_email = from_email
        self.admin_emails = list(admin_emails)
        self.org_name = org_name

    def _send(self, to_emails, subject, html):
        if not self.api_key:
            logger.warning("SendGrid API key not configured; skipping email %r", subject)
            return False
        try:
            message = Mail(
                from_email=self.from_email,
                to_emails=to_emails,
                subject=subject,
                html_content=html,
            )
            response = SendGridAPIClient(self.api_key).send(message)
            return response.status_code in (200, 202)
        except Exception:
            logger.exception("Failed to send email %r to %s", subject, to_emails)
            return False

    def donation_completed(self, donation):
        donor = donation.donor_info or {}
        payment_id = donation.payment_id or (donation.payment_details or {}).get("razorpay_payment_id", "")
        amount = f"{donation.currency} {donation.amount}"

        if donor.get("email"):
            self._send(
                donor["email"],
                f"Thank you for your donation to {self.org_name}",
                (
                    f"<p>Dear {donor.get('name') or 'Donor'},</p>"
                    f"<p>We have received your donation of <strong>{amount}</strong>.</p>"
                    f"<p>Transaction ID: {payment_id}<br>Donation ID: {donation.id}</p>"
                    f"<p>With gratitude,<br>{self.org_name}</p>"
                ),
            )

        if self.admin_emails:
            self._send(
                self.admin_emails,
                f"New donation: {donation.id} - {amount}",
                (
                    f"<p>Donation <strong>{donation.id}</strong> ({donation.donation_type}) completed.</p>"
                    f"<p>Donor: {donor.get('name', '')} &lt;{donor.get('email', '')}&gt;<br>"
                    f"Amount: {amount}<br>Payment: {payment_id}<br>Order: {donation.order_id}</p>"
                ),
            )

    def refund_initiated(self, donation, refund):
        if not self.admin_emails:
            return
        self._send(
            self.admin_emails,
            f"Refund initiated: {donation.id} - {donation.currency} {refund.get('amount')}",
            (
                f"<p>Refund <strong>{refund.get('refund_id')}</strong> for donation {donation.id}.</p>"
                f"<p>Amount: {donation.currency} {refund.get('amount')}<br>"
                f"Reason: {refund.get('reason', '')}<br>"
                f"Initiated by: {refund.get('initiated_by', '')}<br>"
                f"Status: {refund.get('status', '')}</p>"
            ),
        )
