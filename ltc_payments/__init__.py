"""
LTC Payments - custodial payment gateway.

Generates a fresh receiving address per payment, watches it through an
Electrum server, and once funds are confirmed sweeps them to a single
cold-storage address.

Usage:
    # Run the API and the sweeper
    ltc-payments serve

    # Run one sweep pass (for testing)
    ltc-payments sweep --once
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
