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

"""Merch Fulfillment Server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence
from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from merch_fulfillment import config
from merch_fulfillment.exceptions import MerchError
from merch_fulfillment.routes.checkout import router as checkout_router
from merch_fulfillment.routes.order import router as order_router
from merch_fulfillment.routes.webhooks import router as webhooks_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Merch Fulfillment Service",
    version=config.SERVER_VERSION,
    description="Reconciles Stripe payments into Printful fulfillment orders",
    lifespan=config.lifespan,
)


@app.exception_handler(MerchError)
async def merch_exception_handler(request: Request, exc: MerchError):
  """Converts server exceptions to JSON responses."""
  del request  # Unused.
  return JSONResponse(
      status_code=exc.status_code,
      content={"detail": exc.message, "code": exc.code},
  )


app.include_router(webhooks_router)
app.include_router(checkout_router)
app.include_router(order_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Merch Fulfillment Server."""
  del argv  # Unused.

  if config.FLAGS.database_path is None or config.FLAGS.port is None:
    logger.error("Both --database_path and --port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  if not config.FLAGS.stripe_webhook_secret:
    logger.warning("STRIPE_WEBHOOK_SECRET not set; Stripe webhooks will fail")
  if not config.FLAGS.printful_api_key:
    logger.warning("PRINTFUL_API_KEY not set; orders cannot be fulfilled")

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  """Console script entry point."""
  absl_app.run(main)


if __name__ == "__main__":
  run()
