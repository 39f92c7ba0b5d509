"""Per-capability cost estimation for budget accounting."""

from __future__ import annotations

import os

from fin_research.config import DEFAULT_CAPABILITY_PRICING
from fin_research.providers.base import Capability


def estimate_cost_usd(capability: Capability, *, pricing: str | None = None) -> float:
    """Estimated USD cost of one dispatch of ``capability``.

    Without any configured pricing the flat default estimate applies; an
    explicit mapping that prices neither the capability nor ``*`` makes it free.
    """

    if pricing is None:
        pricing = os.getenv("FIN_RESEARCH_CAPABILITY_PRICING", DEFAULT_CAPABILITY_PRICING)
    mapping = _parse_pricing_mapping(pricing)
    direct = mapping.get(capability.value)
    if direct is not None:
        return direct
    return mapping.get("*", 0.0)


def _parse_pricing_mapping(raw: str) -> dict[str, float]:
    """Parse `FIN_RESEARCH_CAPABILITY_PRICING` mapping.

    Format:
    - `capability:usd_per_call`
    - multiple entries separated by `,`
    - `*` matches any capability without its own entry
    """

    parsed: dict[str, float] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 2:
            continue
        capability, price = parts
        try:
            usd = float(price)
        except ValueError:
            continue
        if usd < 0:
            continue
        parsed[capability.lower()] = usd
    return parsed
