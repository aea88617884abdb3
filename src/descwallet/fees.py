"""
Fee model: network fee rate estimation and rate <-> absolute conversion.

Rates are sat/vB; weights are weight units (4 WU = 1 vB).
"""

from __future__ import annotations

import math

from loguru import logger

from descwallet.backends.base import BackendConnectionError, BackendError
from descwallet.config import WalletConfig
from descwallet.errors import WalletError
from descwallet.models import NetworkFee


async def estimate_rate(config: WalletConfig, target: int) -> NetworkFee:
    """
    Fee rate (sat/vB) expected to confirm within ``target`` blocks.

    Uses ``config.client`` without closing it; the caller owns the config.
    """
    if config.client is None:
        raise WalletError.internal("Fee-Estimate", "No blockchain backend configured")
    try:
        rate = await config.client.estimate_fee(target)
    except (BackendConnectionError, BackendError) as e:
        logger.error(f"Fee estimation failed: {e}")
        raise WalletError.internal("Fee-Estimate", str(e)) from e
    return NetworkFee(rate=rate, absolute=None)


def get_absolute(fee_rate: float, weight: int) -> NetworkFee:
    """Absolute fee for ``weight`` WU at ``fee_rate`` sat/vB, rounded up."""
    vbytes = math.ceil(weight / 4)
    # round() drops float noise such as 1.1 * 10 == 11.000000000000002
    absolute = math.ceil(round(fee_rate * vbytes, 6))
    return NetworkFee(rate=fee_rate, absolute=absolute)


def get_rate(fee_absolute: int, weight: int) -> NetworkFee:
    """Fee rate in sat/vB paid by ``fee_absolute`` sats over ``weight`` WU."""
    if weight <= 0:
        raise WalletError.internal("Fee-Rate", f"Invalid weight: {weight}")
    vbytes = math.ceil(weight / 4)
    return NetworkFee(rate=fee_absolute / vbytes, absolute=fee_absolute)
