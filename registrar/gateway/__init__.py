"""Ledger gateway factory.

Provides get_gateway() / set_gateway() to swap implementations:
- FakeGateway for development and testing (PAYMENT_GATEWAY=fake, the default)
- SquareGateway for production (PAYMENT_GATEWAY=square)
"""

import logging
import os
from typing import Optional

from registrar.gateway.fake_adapter import FakeGateway
from registrar.gateway.port import LedgerGateway

logger = logging.getLogger(__name__)

_current_gateway: Optional[LedgerGateway] = None


def _build_gateway() -> LedgerGateway:
    backend = os.getenv("PAYMENT_GATEWAY", "fake").lower()
    if backend == "square":
        from registrar.gateway.square_adapter import SquareGateway

        logger.info("Using Square payment gateway")
        return SquareGateway()
    if backend != "fake":
        logger.warning(f"Unknown PAYMENT_GATEWAY '{backend}', falling back to fake gateway")
    return FakeGateway()


def get_gateway() -> LedgerGateway:
    """Return the current ledger gateway, building it from the environment on first use."""
    global _current_gateway
    if _current_gateway is None:
        _current_gateway = _build_gateway()
    return _current_gateway


def set_gateway(gateway: LedgerGateway) -> None:
    """Override the active ledger gateway (useful for tests)."""
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    """Reset to the environment-configured gateway."""
    global _current_gateway
    _current_gateway = None
