"""Minimal HTML status page for the checkout return URL."""

from html import escape
from typing import Optional

from config import Settings
from pipeline.checkout import ReturnOutcome
from schemas.checkout import SessionStatus

_PAGE = """<!doctype html><html lang="en"><head>
<meta charset="utf-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<title>{heading}</title>
<style>
  body {{ font-family: system-ui, -apple-system, sans-serif; background:#f9fafb; margin:0; padding:32px; }}
  .card {{ max-width:520px; margin:0 auto; background:#fff; border-radius:20px; padding:32px; box-shadow:0 20px 45px rgba(15,23,42,0.12); }}
  .status {{ margin:0 0 16px; font-size:26px; font-weight:700; }}
  .lead {{ margin:0 0 12px; font-size:16px; color:#1f2937; }}
  .note {{ margin:0 0 16px; font-size:14px; color:#475569; }}
  .detail {{ margin:0 0 12px; font-size:14px; color:#b91c1c; }}
  .meta {{ margin:0; font-size:13px; color:#2563eb; }}
  .cta {{ display:inline-block; margin-top:24px; padding:12px 20px; border-radius:12px; font-weight:600; text-decoration:none; }}
  .success .status {{ color:#166534; }}
  .pending .status {{ color:#92400e; }}
  .error .status {{ color:#b91c1c; }}
</style>
</head><body>
<div class="card {variant}">
  <h1 class="status">{heading}</h1>
  <p class="lead">{lead}</p>
  <p class="note">{note}</p>
  {detail}
  {reference}
  <a class="cta" href="{home_url}" target="_parent" rel="noopener">Return to site</a>
  <a class="cta" href="{refresh_url}" target="_parent" rel="noopener">Refresh status</a>
</div>
</body></html>"""


def _downstream_message(outcome: ReturnOutcome) -> Optional[str]:
    notification = outcome.notification
    if notification is None or notification.downstream is None:
        return None
    data = notification.downstream.data
    if not isinstance(data, dict):
        return None
    error = data.get("Error") or data.get("error")
    if isinstance(error, dict):
        message = error.get("Message") or error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def render_status_page(outcome: ReturnOutcome, settings: Settings) -> str:
    session = outcome.session
    status = session.status
    notification = outcome.notification

    detail = (notification.detail if notification else None) or _downstream_message(outcome)
    receipt = (notification.receipt_id if notification else None) or session.gateway_meta.transaction_id

    if status == SessionStatus.PAID:
        heading = "Payment Successful"
        lead = "Thanks! Your payment was processed successfully."
        note = "You can close this window or return to the Mindbody portal."
        variant = "success"
    elif status in (SessionStatus.PROCESSING, SessionStatus.CREATED):
        heading = "Payment Processing"
        lead = "We are still confirming your payment."
        note = "Refresh this page shortly to check again."
        variant = "pending"
    else:
        heading = "Payment Issue"
        lead = detail or "We could not complete your payment. Please contact support."
        note = "Please try again or reach out to your studio for assistance."
        variant = "error"

    detail_html = ""
    if detail and status != SessionStatus.PAID and lead != detail:
        detail_html = f'<p class="detail">{escape(detail)}</p>'
    reference_html = ""
    if status == SessionStatus.PAID and receipt:
        reference_html = f'<p class="meta">Reference: {escape(str(receipt))}</p>'

    return _PAGE.format(
        heading=escape(heading),
        lead=escape(lead),
        note=escape(note),
        variant=variant,
        detail=detail_html,
        reference=reference_html,
        home_url=escape(settings.absolute_url("/")),
        refresh_url=escape(settings.absolute_url("/v1/checkout/return", sessionId=session.id)),
    )
