"""
Email Delivery for stock-health and expiry notifications (SendGrid).
"""

import asyncio
from html import escape

import sendgrid
from sendgrid.helpers.mail import Mail

SEVERITY_COLORS = {
    "warning": ("#fff7ed", "#f59e0b"),
    "critical": ("#fef2f2", "#dc2626"),
    "emergency": ("#450a0a", "#ef4444"),
}


def render_alert_email(title: str, message: str, severity: str) -> tuple[str, str]:
    """Return (subject, html) for a notification."""
    background, border = SEVERITY_COLORS.get(severity, SEVERITY_COLORS["warning"])
    text_color = "#fef2f2" if severity == "emergency" else "#1e293b"
    subject = f"[{severity.upper()}] {title}"
    body = "<br>".join(escape(line) for line in message.splitlines())

    html_content = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">LotWatch Alert</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <div style="background: {background}; border-left: 4px solid {border};
                    padding: 16px; border-radius: 0 8px 8px 0; margin-bottom: 16px;">
          <p style="margin: 0; font-weight: 600; color: {text_color};">
            {severity.upper()}: {escape(title)}
          </p>
        </div>
        <p style="color: #334155; line-height: 1.6;">{body}</p>
      </div>
      <div style="text-align: center; padding: 16px; color: #94a3b8; font-size: 12px;">
        LotWatch · Batch and stock health monitoring
      </div>
    </div>
    """
    return subject, html_content


async def send_alert_email(
    api_key: str,
    from_email: str,
    to_emails: list[str],
    title: str,
    message: str,
    severity: str,
) -> int:
    """
    Send a notification email via SendGrid.

    Returns the SendGrid status code; raises on transport errors so the
    dispatcher can record the channel as failed.
    """
    subject, html_content = render_alert_email(title, message, severity)
    email = Mail(
        from_email=from_email,
        to_emails=to_emails,
        subject=subject,
        plain_text_content=message,
        html_content=html_content,
    )
    client = sendgrid.SendGridAPIClient(api_key=api_key)
    response = await asyncio.to_thread(client.send, email)
    return response.status_code
