"""REST API routes."""

import logging

from fastapi import APIRouter

from signaling.ice import get_ice_servers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_gateway = None


def init_routes(gateway) -> None:
    """Inject service dependencies into the routes module."""
    global _gateway
    _gateway = gateway


@router.get("/ice-servers")
async def ice_servers():
    """
    Return the RTCConfiguration.iceServers list for the direct variant.

    TURN credentials stay server-side; this endpoint never fails, falling
    back to public STUN servers.
    """
    return {"iceServers": await get_ice_servers()}


@router.get("/status")
async def status():
    """Peer and session counts."""
    return _gateway.status()
