#   Copyright 2026 Merch Fulfillment Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Outbound email for customers and operators.

Every method returns a `NotificationResult` and never raises. Without an email
API key the message is logged instead of sent, so local environments keep the
order pipeline working.
"""

import html
import json
import logging
from typing import Any, Dict, Optional

import httpx
from merch_fulfillment import db
from merch_fulfillment.config import Settings
from merch_fulfillment.models import NotificationResult

logger = logging.getLogger(__name__)


def _format_address(address: Optional[Dict[str, Any]]) -> str:
  if not address:
    return ""
  lines = [address.get("name"), address.get("line1"), address.get("line2")]
  lines.append(
      f"{address.get('city', '')}, {address.get('state', '')}"
      f" {address.get('postal_code', '')}"
  )
  lines.append(address.get("country"))
  return "\n".join(line for line in lines if line)


class NotificationService:
  """Sends transactional email through an HTTP email API."""

  def __init__(
      self,
      settings: Settings,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self.settings = settings
    self._transport = transport

  async def send_email(
      self,
      to: str,
      subject: str,
      body: str,
      html_body: Optional[str] = None,
  ) -> NotificationResult:
    """Sends one email, reporting failure instead of raising."""
    if not self.settings.email_api_key:
      logger.info(
          "Email provider not configured; would send to %s: %s\n%s",
          to,
          subject,
          body,
      )
      return NotificationResult(sent=False, reason="not_configured")

    payload = {
        "from": self.settings.email_from,
        "to": [to],
        "subject": subject,
        "text": body,
    }
    if html_body:
      payload["html"] = html_body

    try:
      async with httpx.AsyncClient(transport=self._transport) as client:
        response = await client.post(
            self.settings.email_api_url,
            json=payload,
            headers={
                "Authorization": f"Bearer {self.settings.email_api_key}"
            },
            timeout=5.0,
        )
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Failed to send email to %s: %s", to, e)
      return NotificationResult(sent=False, reason=str(e) or type(e).__name__)

    if not response.is_success:
      logger.error(
          "Email provider rejected message to %s: %d %s",
          to,
          response.status_code,
          response.text[:500],
      )
      return NotificationResult(
          sent=False, reason=f"HTTP {response.status_code}"
      )

    logger.info("Email sent to %s: %s", to, subject)
    return NotificationResult(sent=True)

  async def send_order_confirmation(
      self, order: db.Order
  ) -> NotificationResult:
    """Emails the customer a receipt for a fulfilled order."""
    business = self.settings.business_name
    customer_name = order.customer_name or "Customer"
    total = f"${order.total_amount} {order.currency.upper()}"
    item_lines = [
        f"  - {item.name} (x{item.quantity}) - ${item.price}"
        for item in order.items
    ]
    address = _format_address(order.shipping_address)

    body = "\n".join([
        f"Dear {customer_name},",
        "",
        "Thank you for your order! We've received your payment and are"
        " processing your order.",
        "",
        "Order Details:",
        f"Order ID: {order.id}",
        f"Total: {total}",
        "",
        "Items:",
        *item_lines,
        "",
        *([f"Shipping Address:\n{address}", ""] if address else []),
        "If you have any questions, please contact us at"
        f" {self.settings.support_email}.",
        "",
        "Best regards,",
        business,
    ])

    items_html = "".join(
        f"<li>{html.escape(item.name)} (x{item.quantity}) -"
        f" ${item.price}</li>"
        for item in order.items
    )
    address_html = (
        "<h3>Shipping Address</h3><p>"
        + html.escape(address).replace("\n", "<br>")
        + "</p>"
        if address
        else ""
    )
    html_body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px;">'
        "<h2>Thank you for your order!</h2>"
        f"<p>Dear {html.escape(customer_name)},</p>"
        "<p>We've received your payment and are processing your order.</p>"
        f"<h3>Order Details</h3><p><strong>Order ID:</strong> {order.id}<br>"
        f"<strong>Total:</strong> {total}</p>"
        f"<h3>Items</h3><ul>{items_html}</ul>"
        f"{address_html}"
        "<p>If you have any questions, please contact us at"
        f" {html.escape(self.settings.support_email)}.</p>"
        f"<p>Best regards,<br>{html.escape(business)}</p>"
        "</div>"
    )

    return await self.send_email(
        order.customer_email,
        f"Order Confirmation - {business}",
        body,
        html_body,
    )

  async def send_payment_failure(
      self, customer_email: str, session_id: str
  ) -> NotificationResult:
    """Tells the customer a delayed payment did not go through."""
    business = self.settings.business_name
    body = "\n".join([
        "Dear Customer,",
        "",
        "We were unable to process your payment for order session"
        f" {session_id}.",
        "",
        "This can happen for several reasons:",
        "- Insufficient funds",
        "- Bank declined the transaction",
        "- Payment method expired",
        "",
        "Please try again or contact your bank for more information.",
        "",
        "If you continue to have issues, please contact us at"
        f" {self.settings.support_email}.",
        "",
        "Best regards,",
        business,
    ])
    return await self.send_email(
        customer_email, f"Payment Failed - {business}", body
    )

  async def send_admin_alert(
      self,
      subject: str,
      message: str,
      metadata: Optional[Dict[str, Any]] = None,
  ) -> NotificationResult:
    """Alerts the operator about a condition that needs manual attention."""
    parts = [message]
    if metadata:
      parts.append(
          "Metadata:\n" + json.dumps(metadata, indent=2, default=str)
      )
    parts.append(
        f"This is an automated alert from {self.settings.business_name}."
    )
    logger.warning("Admin alert: %s", subject)
    return await self.send_email(
        self.settings.alert_recipient,
        f"[ADMIN ALERT] {subject}",
        "\n\n".join(parts),
    )
