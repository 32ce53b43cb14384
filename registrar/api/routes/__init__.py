"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter) lives here; every sub-router imports what it
needs from this package.
"""

import os

from fastapi import APIRouter
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)

CHARGE_RATE_LIMIT = os.getenv("CHARGE_RATE_LIMIT", "10/minute")

# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from registrar.api.routes.registrations import router as registrations_router  # noqa: E402
from registrar.api.routes.payments import router as payments_router  # noqa: E402
from registrar.api.routes.refunds import router as refunds_router  # noqa: E402

router = APIRouter()
router.include_router(registrations_router)
router.include_router(payments_router)
router.include_router(refunds_router)
