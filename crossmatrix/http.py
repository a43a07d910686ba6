from __future__ import annotations

import asyncio
import logging
import os
import weakref

import aiohttp

logger = logging.getLogger(__name__)

# One session per event loop; sessions must not be shared across loops.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)

CONNECTOR_LIMIT = int(os.getenv("HTTP_CONNECTOR_LIMIT", "0") or 0)
CONNECTOR_LIMIT_PER_HOST = int(os.getenv("HTTP_CONNECTOR_LIMIT_PER_HOST", "0") or 0)


def _timeout_total() -> float:
    try:
        return float(os.getenv("HTTP_TIMEOUT_SEC", "15") or 15)
    except ValueError:
        return 15.0


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        connector = aiohttp.TCPConnector(
            limit=CONNECTOR_LIMIT,
            limit_per_host=CONNECTOR_LIMIT_PER_HOST,
        )
        ua = os.getenv("HTTP_USER_AGENT", "crossmatrix/0.1")
        trust_env = str(os.getenv("HTTP_TRUST_ENV", "")).lower() in {"1", "true", "yes"}
        if trust_env:
            logger.info("HTTP session will honor proxy settings from the environment")
        sess = aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": ua},
            timeout=aiohttp.ClientTimeout(total=_timeout_total()),
            trust_env=trust_env,
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close all known aiohttp sessions."""
    to_close = list(_SESSIONS.values())
    _SESSIONS.clear()
    for sess in to_close:
        if sess.closed:
            continue
        try:
            await sess.close()
        except (aiohttp.ClientError, RuntimeError) as exc:
            logger.debug("session close failed: %s", exc)
