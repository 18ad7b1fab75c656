from __future__ import annotations

from typing import Optional

from . import cryptopay, heleket, pal24, platega, telegram_stars, wata, yookassa
from .base import GatewayAdapter

ADAPTERS: dict[str, GatewayAdapter] = {
    adapter.name: adapter
    for adapter in (
        cryptopay.ADAPTER,
        yookassa.ADAPTER,
        heleket.ADAPTER,
        pal24.ADAPTER,
        platega.ADAPTER,
        wata.ADAPTER,
        telegram_stars.ADAPTER,
    )
}


def get_adapter(name: Optional[str]) -> GatewayAdapter | None:
    """Return the adapter for a gateway name as it appears in the webhook URL.

    Lookup is case-insensitive and accepts ``_`` for ``-`` (``telegram_stars``).
    """
    if not name:
        return None
    normalized = name.strip().lower().replace("_", "-")
    return ADAPTERS.get(normalized)
