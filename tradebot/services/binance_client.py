"""Shared python-binance AsyncClient construction.

API keys come from the active ``binance`` credential row (Fernet-encrypted)
and fall back to the ``TB_BINANCE_API_KEY`` / ``TB_BINANCE_API_SECRET``
settings. Public market data works without keys.
"""

import logging

from binance import AsyncClient

from tradebot.config import settings

logger = logging.getLogger(__name__)


def resolve_binance_keys(store=None) -> tuple[str | None, str | None]:
    """Return (api_key, api_secret), preferring stored credentials."""
    if store is not None:
        try:
            cred = store.get_credential("binance")
        except Exception as e:
            logger.error(f"Could not load binance credential: {e}")
            cred = None
        if cred is not None:
            return cred
    return settings.binance_api_key or None, settings.binance_api_secret or None


async def create_binance_client(store=None) -> AsyncClient:
    """Open an AsyncClient against mainnet or testnet per settings."""
    api_key, api_secret = resolve_binance_keys(store)
    client = await AsyncClient.create(
        api_key=api_key,
        api_secret=api_secret,
        testnet=settings.binance_testnet,
    )
    logger.info(
        f"Binance client ready (testnet={settings.binance_testnet}, "
        f"authenticated={api_key is not None})"
    )
    return client
