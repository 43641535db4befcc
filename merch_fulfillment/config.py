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

"""Shared configuration and startup logic for the merch fulfillment server.

Every setting is an absl flag whose default comes from the environment (after
loading a local `.env` file), so deployments can configure either way.
"""

import contextlib
import os
from typing import Optional

from absl import flags
from dotenv import load_dotenv
from fastapi import FastAPI
from merch_fulfillment import db
from pydantic import BaseModel

load_dotenv()

FLAGS = flags.FLAGS

SERVER_VERSION = "1.0.0"


def _env_int(name: str) -> Optional[int]:
  value = os.environ.get(name)
  return int(value) if value else None


# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string(
      "database_path", os.environ.get("DATABASE_PATH"), "Path to orders DB"
  )
  flags.DEFINE_integer("port", _env_int("PORT"), "Port to run the server on")
  flags.DEFINE_string(
      "stripe_secret_key",
      os.environ.get("STRIPE_SECRET_KEY"),
      "Stripe API secret key",
  )
  flags.DEFINE_string(
      "stripe_webhook_secret",
      os.environ.get("STRIPE_WEBHOOK_SECRET"),
      "Signing secret for Stripe webhook deliveries",
  )
  flags.DEFINE_string(
      "printful_api_key",
      os.environ.get("PRINTFUL_API_KEY"),
      "Printful API bearer token",
  )
  flags.DEFINE_string(
      "printful_webhook_secret",
      os.environ.get("PRINTFUL_WEBHOOK_SECRET"),
      "Shared secret for Printful webhook signatures (unset accepts unsigned)",
  )
  flags.DEFINE_string(
      "printful_api_base",
      os.environ.get("PRINTFUL_API_BASE", "https://api.printful.com"),
      "Base URL of the Printful REST API",
  )
  flags.DEFINE_string(
      "email_api_key",
      os.environ.get("EMAIL_API_KEY"),
      "API key for the outbound email provider",
  )
  flags.DEFINE_string(
      "email_api_url",
      os.environ.get("EMAIL_API_URL", "https://api.resend.com/emails"),
      "Endpoint of the outbound email provider",
  )
  flags.DEFINE_string(
      "email_from",
      os.environ.get("EMAIL_FROM", "orders@example.com"),
      "Sender address for outbound email",
  )
  flags.DEFINE_string(
      "admin_email", os.environ.get("ADMIN_EMAIL"), "Operator alert recipient"
  )
  flags.DEFINE_string(
      "support_email",
      os.environ.get("SUPPORT_EMAIL", "support@example.com"),
      "Customer support address",
  )
  flags.DEFINE_string(
      "business_name",
      os.environ.get("BUSINESS_NAME", "Merch Store"),
      "Business name used in emails",
  )
  flags.DEFINE_string(
      "base_url",
      os.environ.get("BASE_URL", "http://localhost:5000"),
      "Public base URL of the storefront",
  )
except flags.DuplicateFlagError:
  pass


class Settings(BaseModel):
  """Immutable snapshot of the server configuration."""

  database_path: Optional[str] = None
  stripe_secret_key: Optional[str] = None
  stripe_webhook_secret: Optional[str] = None
  printful_api_key: Optional[str] = None
  printful_webhook_secret: Optional[str] = None
  printful_api_base: str = "https://api.printful.com"
  email_api_key: Optional[str] = None
  email_api_url: str = "https://api.resend.com/emails"
  email_from: str = "orders@example.com"
  admin_email: Optional[str] = None
  support_email: str = "support@example.com"
  business_name: str = "Merch Store"
  base_url: str = "http://localhost:5000"
  success_path: str = "/checkout/success"
  cancel_path: str = "/checkout/cancel"

  model_config = {"frozen": True}

  @property
  def alert_recipient(self) -> str:
    return self.admin_email or self.support_email

  @classmethod
  def from_flags(cls) -> "Settings":
    """Builds settings from parsed absl flags."""
    return cls(
        database_path=FLAGS.database_path,
        stripe_secret_key=FLAGS.stripe_secret_key,
        stripe_webhook_secret=FLAGS.stripe_webhook_secret,
        printful_api_key=FLAGS.printful_api_key,
        printful_webhook_secret=FLAGS.printful_webhook_secret,
        printful_api_base=FLAGS.printful_api_base,
        email_api_key=FLAGS.email_api_key,
        email_api_url=FLAGS.email_api_url,
        email_from=FLAGS.email_from,
        admin_email=FLAGS.admin_email,
        support_email=FLAGS.support_email,
        business_name=FLAGS.business_name,
        base_url=FLAGS.base_url,
    )


_SETTINGS_CACHE: Optional[Settings] = None


def get_settings() -> Settings:
  """Returns the cached settings, falling back to defaults before parsing."""
  global _SETTINGS_CACHE
  if _SETTINGS_CACHE:
    return _SETTINGS_CACHE
  if not FLAGS.is_parsed():
    return Settings()
  _SETTINGS_CACHE = Settings.from_flags()
  return _SETTINGS_CACHE


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for initializing the database."""
  del app  # Unused.
  # In tests the flags are not parsed; the test installs its own session.
  if FLAGS.is_parsed() and FLAGS.database_path:
    await db.manager.init_db(FLAGS.database_path)
  yield
  await db.manager.close()
