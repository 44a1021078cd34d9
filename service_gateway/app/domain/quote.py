"""
Quote arithmetic over the published tariff.

The tariff itself is owned by the pricing service; the gateway only needs a
rate table and its hash.
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional, Tuple

DEFAULT_ENDPOINT = "llm.chat.v1"


@dataclass(frozen=True)
class TariffRate:
    endpoint: str
    units_per_call: int
    credits_per_unit: float


@dataclass(frozen=True)
class Tariff:
    version: str
    rates: Tuple[TariffRate, ...]

    @property
    def hash(self) -> str:
        canonical = json.dumps(
            {"version": self.version, "rates": [asdict(rate) for rate in self.rates]},
            sort_keys=True,
            separators=(",", ":"),
        )
        return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def rate_for(self, endpoint: Optional[str] = None) -> TariffRate:
        """Rate for ``endpoint``, or the first published rate when unknown."""
        for rate in self.rates:
            if rate.endpoint == endpoint:
                return rate
        return self.rates[0]


def default_tariff() -> Tariff:
    return Tariff(
        version="v1",
        rates=(TariffRate(endpoint=DEFAULT_ENDPOINT, units_per_call=12000, credits_per_unit=0.00004),),
    )


def estimate_credits(plan: Iterable[Tuple[float, Optional[str]]], tariff: Tariff) -> int:
    """ceil of estimated units times the per-unit rate, summed over the plan.

    ``plan`` yields ``(est_units, endpoint)`` pairs.
    """
    total = 0.0
    for est_units, endpoint in plan:
        total += (est_units or 0) * tariff.rate_for(endpoint).credits_per_unit
    # Float error must not push an exact integer product up a whole credit.
    return math.ceil(round(total, 9))


def plan_entries(entries: Iterable) -> List[Tuple[float, Optional[str]]]:
    return [(entry.est_units, entry.endpoint) for entry in entries]
