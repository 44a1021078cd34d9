"""
Domain helpers for the Gateway Service.

Holds API models and quote arithmetic that do not belong to the auth or
receipt layers.
"""

from .quote import Tariff, TariffRate, default_tariff, estimate_credits

__all__ = [
    "Tariff",
    "TariffRate",
    "default_tariff",
    "estimate_credits",
]
