"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Networking ---
API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("PORT", "3000"))

# Largest control-channel frame the server accepts (text or binary)
MAX_MESSAGE_SIZE = int(os.environ.get("MAX_MESSAGE_SIZE", "1000000"))

# --- Logging ---
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# --- Static front-end ---
STATIC_DIR = Path(
    os.environ.get("STATIC_DIR", str(Path(__file__).parent.parent / "public"))
)

# --- Transfer (relayed variant) ---
RELAY_CHUNK_SIZE = int(os.environ.get("RELAY_CHUNK_SIZE", str(256 * 1024)))
ACK_TIMEOUT = float(os.environ.get("ACK_TIMEOUT", "30"))  # seconds

# --- Transfer (direct variant) ---
DIRECT_CHUNK_SIZE = int(os.environ.get("DIRECT_CHUNK_SIZE", str(16 * 1024)))
BUFFER_HIGH_WATER = int(os.environ.get("BUFFER_HIGH_WATER", str(1024 * 1024)))
BUFFER_LOW_WATER = int(os.environ.get("BUFFER_LOW_WATER", str(256 * 1024)))
NEGOTIATION_TIMEOUT = float(os.environ.get("NEGOTIATION_TIMEOUT", "20"))
DRAIN_TIMEOUT = float(os.environ.get("DRAIN_TIMEOUT", "30"))

# --- Relayed sessions on the server ---
SESSION_IDLE_TIMEOUT = float(os.environ.get("SESSION_IDLE_TIMEOUT", "60"))
SESSION_SWEEP_INTERVAL = float(os.environ.get("SESSION_SWEEP_INTERVAL", "10"))

# --- ICE servers ---
ICE_LOOKUP_TIMEOUT = float(os.environ.get("ICE_LOOKUP_TIMEOUT", "5"))
DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]

DEFAULT_CONTENT_TYPE = "application/octet-stream"
