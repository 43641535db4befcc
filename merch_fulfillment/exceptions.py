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

"""Custom exceptions for the merch fulfillment server."""


class MerchError(Exception):
  """Base class for all merch fulfillment exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class ResourceNotFoundError(MerchError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class InvalidRequestError(MerchError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class DuplicateOrderError(MerchError):
  """Raised when an order already exists for a checkout session."""

  def __init__(self, session_id: str):
    self.session_id = session_id
    super().__init__(
        f"Order already exists for session {session_id}",
        code="DUPLICATE_ORDER",
        status_code=409,
    )


class InvalidStatusTransitionError(MerchError):
  """Raised when an order status change is not in the transition table."""

  def __init__(self, order_id: str, current: str, requested: str):
    self.order_id = order_id
    self.current = current
    self.requested = requested
    super().__init__(
        f"Cannot move order {order_id} from '{current}' to '{requested}'",
        code="INVALID_STATUS_TRANSITION",
        status_code=409,
    )


class PaymentProviderError(MerchError):
  """Raised when the payment provider rejects or fails a request."""

  def __init__(self, message: str):
    super().__init__(message, code="PAYMENT_PROVIDER_ERROR", status_code=502)


class ServiceNotConfiguredError(MerchError):
  """Raised when a required third-party integration has no credentials."""

  def __init__(self, message: str):
    super().__init__(message, code="NOT_CONFIGURED", status_code=503)


class WebhookVerificationError(MerchError):
  """Raised when a webhook delivery fails signature verification."""

  def __init__(self, message: str, status_code: int = 400):
    super().__init__(
        message, code="WEBHOOK_VERIFICATION_FAILED", status_code=status_code
    )
