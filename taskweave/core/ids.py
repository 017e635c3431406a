"""Identifier and secret generation."""

import secrets
import time

SECRET_PREFIX = "wfsec_"


def generate_secret() -> str:
    """Callback secret: ``wfsec_`` + 48 hex chars."""
    return SECRET_PREFIX + secrets.token_hex(24)


def event_id(prefix: str = "wevt") -> str:
    """Time-ordered event id, e.g. ``wevt_1718000000000_3f9a1c2b``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
