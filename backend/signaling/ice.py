"""
Network-traversal (ICE) server lookup.

Always returns at least the default STUN servers. TURN servers are added
from Metered.ca (``METERED_API_KEY`` + ``METERED_APP_NAME``) and/or from
manual ``TURN_URL`` / ``TURN_USERNAME`` / ``TURN_CREDENTIAL`` variables.
Lookup failures are logged and never propagate.
"""

import logging
import os

import httpx

from config import DEFAULT_STUN_SERVERS, ICE_LOOKUP_TIMEOUT

logger = logging.getLogger(__name__)

METERED_URL = "https://{app}.metered.ca/api/v1/turn/credentials"


def default_ice_servers() -> list[dict]:
    return [{"urls": url} for url in DEFAULT_STUN_SERVERS]


async def fetch_metered_servers(
    client: httpx.AsyncClient, app_name: str, api_key: str
) -> list[dict]:
    """Fetch TURN credentials from Metered. Returns [] on any failure."""
    url = METERED_URL.format(app=app_name)
    try:
        resp = await client.get(url, params={"apiKey": api_key})
    except httpx.HTTPError as e:
        logger.error(f"[ICE] Could not reach Metered API: {e}")
        return []

    if resp.status_code != 200:
        logger.error(f"[ICE] Metered API returned {resp.status_code}")
        return []

    try:
        servers = resp.json()
    except ValueError as e:
        logger.error(f"[ICE] Metered API returned invalid JSON: {e}")
        return []

    if not isinstance(servers, list):
        logger.error("[ICE] Metered API returned an unexpected payload")
        return []

    logger.info(f"[ICE] Metered TURN: loaded {len(servers)} servers")
    return [s for s in servers if isinstance(s, dict)]


def manual_turn_servers(env=os.environ) -> list[dict]:
    turn_url = env.get("TURN_URL")
    username = env.get("TURN_USERNAME")
    credential = env.get("TURN_CREDENTIAL")
    if not (turn_url and username and credential):
        return []
    logger.info(f"[ICE] Manual TURN server added: {turn_url}")
    return [
        {"urls": turn_url, "username": username, "credential": credential},
        {"urls": f"{turn_url}?transport=tcp", "username": username, "credential": credential},
    ]


async def get_ice_servers(
    client: httpx.AsyncClient | None = None, env=os.environ
) -> list[dict]:
    """Build the iceServers list handed to peers."""
    ice_servers = default_ice_servers()

    api_key = env.get("METERED_API_KEY")
    app_name = env.get("METERED_APP_NAME")
    if api_key and app_name:
        if client is None:
            async with httpx.AsyncClient(timeout=ICE_LOOKUP_TIMEOUT) as own_client:
                ice_servers.extend(await fetch_metered_servers(own_client, app_name, api_key))
        else:
            ice_servers.extend(await fetch_metered_servers(client, app_name, api_key))

    ice_servers.extend(manual_turn_servers(env))

    if len(ice_servers) == len(DEFAULT_STUN_SERVERS):
        logger.warning(
            "[ICE] No TURN server configured. Cross-network transfers may fail."
        )
    return ice_servers
