"""Abandoned-cart heartbeat tracking."""

from mailflow.cart.abandoned import (
    AbandonedCartEntry,
    AbandonedCartTracker,
    CartItem,
    CartScanResult,
)

__all__ = [
    "AbandonedCartEntry",
    "AbandonedCartTracker",
    "CartItem",
    "CartScanResult",
]
