"""
Entry point for running the gateway as a module.

Usage:
    python -m ltc_payments
"""

from ltc_payments.cli import main

if __name__ == "__main__":
    main()
