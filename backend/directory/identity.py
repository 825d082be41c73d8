"""
Identity generator for newly connected peers.

Names are short and easy to tell apart on screen; they are not unique.
The connection id is the identity, the name is only a label.
"""

import random
import secrets

ADJECTIVES = [
    "Swift", "Bold", "Calm", "Dark", "Epic", "Fast", "Glow", "Iron",
    "Jade", "Keen", "Lush", "Mist", "Nova", "Onyx", "Pure", "Sage",
    "Teal", "Vast", "Wild", "Zeal",
]

NOUNS = [
    "Falcon", "Ghost", "Hawk", "Iris", "Kite", "Lynx", "Nexus", "Orb",
    "Pulse", "Raven", "Star", "Titan", "Viper", "Wolf", "Xenon", "Blaze",
    "Cruz", "Dart", "Edge", "Flux",
]


def generate_peer_name() -> str:
    """Return a label like ``Swift-Falcon-3F``."""
    suffix = secrets.token_hex(1).upper()
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}-{suffix}"
