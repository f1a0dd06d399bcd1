"""
Transactional email for the order lifecycle, sent through the Resend HTTP API.

Composition helpers return (subject, text[, html]) so they can be tested without a relay;
Mailer does the sending.
"""
import html as _html
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import requests

import settings
from analytics import to_amount

log = logging.getLogger("uvicorn.error")


class EmailError(RuntimeError):
    pass


class Mailer:
    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None,
                 enabled: Optional[bool] = None, timeout: Optional[float] = None,
                 brand: Optional[str] = None, team_to: Optional[str] = None,
                 team_cc: Optional[str] = None, sender: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.api_key = settings.RESEND_API_KEY if api_key is None else api_key
        self.api_url = api_url or settings.RESEND_API_URL
        self.enabled = settings.EMAIL_ENABLED if enabled is None else enabled
        self.timeout = timeout or settings.EMAIL_TIMEOUT
        self.brand = brand or settings.BRAND_NAME
        self.team_to = team_to or settings.ORDER_EMAIL_TO
        self.team_cc = settings.ORDER_EMAIL_CC if team_cc is None else team_cc
        self.sender = sender or settings.EMAIL_FROM
        self.session = session or requests.Session()

    def send(self, to: Union[str, List[str]], subject: str, text: str,
             html: Optional[str] = None, cc: Optional[Union[str, List[str]]] = None) -> Dict[str, Any]:
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            raise EmailError("no recipients")

        payload: Dict[str, Any] = {
            "from": f"{self.brand} <{self.sender}>",
            "to": recipients,
            "subject": subject,
            "text": text,
        }
        if html:
            payload["html"] = html
        if cc:
            payload["cc"] = [cc] if isinstance(cc, str) else list(cc)

        if not self.enabled:
            log.info("email disabled; would send %r to %s", subject, recipients)
            return {"id": None, "skipped": True}
        if not self.api_key:
            raise EmailError("RESEND_API_KEY is not configured")

        try:
            r = self.session.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise EmailError(f"email relay unreachable: {e}") from e
        if r.status_code >= 400:
            raise EmailError(f"email relay returned {r.status_code}: {r.text[:200]}")
        result = r.json() if r.content else {}
        log.info("email sent to %s, id=%s", recipients, result.get("id"))
        return result

    def send_team(self, subject: str, text: str, html: Optional[str] = None) -> Dict[str, Any]:
        return self.send(self.team_to, subject, text, html=html, cc=self.team_cc or None)


# ===================== message bodies =====================

def format_items_text(lines: Iterable[Dict[str, Any]]) -> str:
    """One bullet per line item: '• Name (size) xN - $12.34'."""
    out = []
    for line in lines:
        product = line.get("product") or {}
        name = product.get("name") or line.get("name") or "Item"
        size = product.get("size") or line.get("size")
        qty = int(line.get("quantity") or 0)
        amount = line.get("total_price")
        if amount is None:
            amount = to_amount(product.get("price") or line.get("unit_price")) * qty
        label = f"{name} ({size})" if size else name
        out.append(f"• {label} x{qty} - ${to_amount(amount):.2f}")
    return "\n".join(out)


def _ship_to(retailer: Dict[str, Any], location: Optional[Dict[str, Any]]) -> Dict[str, str]:
    location = location or {}
    return {
        "name": location.get("location_name") or retailer.get("company_name") or "Not provided",
        "address": location.get("business_address") or retailer.get("business_address") or "Not provided",
        "phone": location.get("phone") or retailer.get("phone") or "Not provided",
    }


def team_order_email(order: Dict[str, Any], lines: List[Dict[str, Any]], retailer: Dict[str, Any],
                     location: Optional[Dict[str, Any]] = None, brand: str = settings.BRAND_NAME):
    ship = _ship_to(retailer, location)
    parts = [
        "New Wholesale Order Received!",
        "",
        f"Order Number: {order['order_number']}",
    ]
    if order.get("include_samples"):
        parts.append("Samples: INCLUDE SAMPLES (requested by retailer)")
    parts += [
        "",
        "Customer Information:",
        f"- Business Name: {retailer.get('company_name') or 'Not provided'}",
        f"- Email: {retailer.get('email') or 'Not provided'}",
        f"- Phone: {retailer.get('phone') or 'Not provided'}",
        f"- Address: {retailer.get('business_address') or 'Not provided'}",
        "",
        "Ship-To Location:",
        f"- Name: {ship['name']}",
        f"- Address: {ship['address']}",
        f"- Phone: {ship['phone']}",
        "",
        "Order Details:",
        format_items_text(lines),
        "",
        f"Subtotal: ${to_amount(order.get('subtotal')):.2f}",
        f"Total: ${to_amount(order.get('total')):.2f}",
    ]
    if order.get("delivery_date"):
        parts.append(f"Requested Delivery Date: {order['delivery_date']}")
    if order.get("promotion_code"):
        parts.append(f"Promotion Code: {order['promotion_code']}")
    parts += ["", "---", f"This order was placed through the {brand} Wholesale Portal."]
    return f"New Wholesale Order: {order['order_number']}", "\n".join(parts)


def retailer_confirmation_email(order: Dict[str, Any], lines: List[Dict[str, Any]],
                                retailer: Dict[str, Any], location: Optional[Dict[str, Any]] = None,
                                brand: str = settings.BRAND_NAME):
    ship = _ship_to(retailer, location)
    text = "\n".join([
        "Thank you for your order!",
        "",
        f"Your order {order['order_number']} has been received and is being processed.",
        "",
        "Order Details:",
        format_items_text(lines),
        "",
        f"Total: ${to_amount(order.get('total')):.2f}",
        "",
        "Ship-To Location:",
        f"- Name: {ship['name']}",
        f"- Address: {ship['address']}",
        f"- Phone: {ship['phone']}",
        "",
        "We'll notify you when your order ships.",
        "",
        f"Thank you for choosing {brand}!",
    ])
    return f"Order Confirmation: {order['order_number']}", text


def shipping_email(order: Dict[str, Any], brand: str = settings.BRAND_NAME,
                   contact: str = settings.ORDER_EMAIL_TO):
    lines = ["Your order has shipped!", "", f"Order Number: {order.get('order_number')}"]
    if order.get("tracking_number"):
        carrier = f" ({order['tracking_carrier']})" if order.get("tracking_carrier") else ""
        lines.append(f"Tracking Number: {order['tracking_number']}{carrier}")
    lines += [
        "",
        f"Thank you for your order. If you have any questions, please contact us at {contact}.",
        "",
        "Best regards,",
        brand,
    ]
    return f"Your order {order.get('order_number')} has shipped", "\n".join(lines)


def invoice_email(order: Dict[str, Any], invoice_url: str, brand: str = settings.BRAND_NAME):
    number = order.get("order_number")
    subject = f"Your QuickBooks Invoice for {number}" if number else "Your QuickBooks Invoice"
    text = (
        "Hi there,\n\nYour invoice is ready. Please use the link below to view and pay:\n"
        f"{invoice_url}\n\nThanks,\n{brand}"
    )
    safe_url = _html.escape(invoice_url, quote=True)
    safe_brand = _html.escape(brand)
    order_line = f"<p>Order: <strong>{_html.escape(number)}</strong></p>" if number else ""
    body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background-color: #3d2314; padding: 20px; text-align: center;">
    <h1 style="color: #ffffff; margin: 0;">{safe_brand}</h1>
  </div>
  <div style="padding: 30px; background-color: #f9f6f1;">
    <p>Hi there,</p>
    {order_line}
    <p>Your invoice is ready. Please use the button below to view and pay:</p>
    <p style="margin: 24px 0;">
      <a href="{safe_url}" style="background-color: #3d2314; color: #ffffff; text-decoration: none; padding: 12px 18px; border-radius: 6px; display: inline-block;">View Invoice</a>
    </p>
    <p>Thanks,<br />{safe_brand}</p>
  </div>
</div>
""".strip()
    return subject, text, body


def sample_request_email():
    return (
        "Sample Request Received",
        "Thanks! Your request has been submitted. We will include samples with your next order.",
    )
