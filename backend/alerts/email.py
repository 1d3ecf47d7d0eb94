"""
Email delivery for reorder alerts via SendGrid.

Templates are keyed by notification stage:
  reorder_initial     - first notice for a new alert (manager + admin)
  reorder_escalation  - same-day escalation once an alert turns critical (admin)
  supplier_reorder    - purchase request to the item's preferred supplier
"""

from __future__ import annotations

import asyncio

import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from alerts.transport import OutboundMessage, SendReceipt, Transport, TransportError
from core.types import NotificationStage, Priority

logger = structlog.get_logger()

TEMPLATE_FOR_STAGE = {
    NotificationStage.INITIAL: "reorder_initial",
    NotificationStage.ESCALATION: "reorder_escalation",
    NotificationStage.SUPPLIER: "supplier_reorder",
}

PRIORITY_COLOURS = {
    "critical": ("#fef2f2", "#dc2626"),
    "high": ("#fff7ed", "#f59e0b"),
    "medium": ("#fefce8", "#ca8a04"),
    "low": ("#f0fdf4", "#16a34a"),
}

# Status codes SendGrid may succeed on after a pause
RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def _title(value: str) -> str:
    return value.replace("_", " ").title()


def render_alert_message(template: str, alert, item) -> tuple[str, str, str]:
    """Return (subject, text body, html body) for an alert notification."""
    item_name = item.name if item is not None else alert.item_id
    unit = item.unit_of_measure if item is not None else "unit"
    priority = alert.priority
    alert_type = _title(alert.alert_type)

    if template == "supplier_reorder":
        subject = f"Purchase request: {alert.suggested_quantity} x {item_name}"
        lines = [
            f"Please arrange delivery of {alert.suggested_quantity} {unit} of {item_name}.",
            f"Requested delivery by {alert.expected_delivery_date.isoformat()}."
            if alert.expected_delivery_date
            else "Requested delivery as soon as possible.",
        ]
    else:
        prefix = "ESCALATED: " if template == "reorder_escalation" else ""
        subject = f"{prefix}Larder Alert [{priority.upper()}]: {alert_type} for {item_name}"
        lines = [
            f"{item_name} is at {alert.observed_on_hand} {unit} (reorder point {alert.reorder_point}).",
            f"Suggested order: {alert.suggested_quantity} {unit}, estimated cost {alert.estimated_cost:.2f}.",
            f"Urgency score: {alert.urgency_score}/100.",
        ]
        if alert.expected_delivery_date:
            lines.append(f"Expected delivery if ordered today: {alert.expected_delivery_date.isoformat()}.")

    text = "\n".join(lines)
    background, border = PRIORITY_COLOURS.get(priority, PRIORITY_COLOURS["low"])
    paragraphs = "".join(f'<p style="color: #334155; line-height: 1.6;">{line}</p>' for line in lines)
    html = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <div style="background: #1e1b4b; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
        <h1 style="margin: 0; font-size: 20px;">Larder Inventory</h1>
      </div>
      <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        <div style="background: {background}; border-left: 4px solid {border};
                    padding: 16px; border-radius: 0 8px 8px 0; margin-bottom: 16px;">
          <p style="margin: 0; font-weight: 600; color: #1e293b;">{priority.upper()} - {alert_type}</p>
        </div>
        {paragraphs}
      </div>
    </div>
    """
    return subject, text, html


def render_digest(sections: list[tuple[str, object, object]]) -> tuple[str, str, str]:
    """Combine several (template, alert, item) notices into one message for the same recipients."""
    if len(sections) == 1:
        return render_alert_message(*sections[0])

    rendered = [render_alert_message(template, alert, item) for template, alert, item in sections]
    top = max((Priority(alert.priority) for _, alert, _ in sections), key=lambda p: p.rank)
    prefix = "ESCALATED: " if any(template == "reorder_escalation" for template, _, _ in sections) else ""
    subject = f"{prefix}Larder Alert [{top.value.upper()}]: {len(sections)} notices"
    text = "\n\n".join(f"{sub}\n{body}" for sub, body, _ in rendered)
    html = "".join(part for _, _, part in rendered)
    return subject, text, html


class SendGridTransport(Transport):
    """SendGrid v3 mail send. One request can address several recipients."""

    supports_multi_recipient = True
    honours_idempotency_key = False

    def __init__(self, api_key: str, from_email: str):
        self._client = sendgrid.SendGridAPIClient(api_key=api_key)
        self._from_email = from_email

    async def send(self, message: OutboundMessage) -> SendReceipt:
        mail = Mail(
            from_email=self._from_email,
            to_emails=[r.address for r in message.recipients],
            subject=message.subject,
            plain_text_content=message.body,
            html_content=message.html or message.body,
            is_multiple=True,
        )
        try:
            response = await asyncio.to_thread(self._client.send, mail)
        except Exception as exc:  # noqa: BLE001
            status = getattr(exc, "status_code", None)
            retryable = status is None or status in RETRYABLE_STATUS
            logger.warning(
                "email.send_failed",
                idempotency_key=message.idempotency_key,
                status_code=status,
                retryable=retryable,
                error=str(exc),
            )
            raise TransportError(f"SendGrid send failed: {exc}", retryable=retryable) from exc

        if response.status_code not in (200, 201, 202):
            retryable = response.status_code in RETRYABLE_STATUS
            raise TransportError(f"SendGrid returned {response.status_code}", retryable=retryable)

        headers = getattr(response, "headers", None) or {}
        message_id = headers.get("X-Message-Id") or message.idempotency_key
        return SendReceipt(message_id=message_id, accepted=tuple(r.id for r in message.recipients))
