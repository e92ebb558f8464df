from __future__ import annotations

import hmac
import os
from typing import Optional


ADMIN_HEADER = "X-Admin-Token"
FORWARDED_HEADER = "X-Forwarded-For"


def get_admin_token() -> str:
    return os.getenv("RL_ADMIN_TOKEN", "")


def is_privileged(header_value: Optional[str], admin_token: Optional[str] = None) -> bool:
    """
    True when the caller presented the admin token.
    An unset token means nobody is privileged.
    """
    expected = get_admin_token() if admin_token is None else admin_token
    if not expected or not header_value:
        return False
    return hmac.compare_digest(header_value.strip().encode("utf-8"), expected.encode("utf-8"))


def resolve_identity(peer_host: Optional[str], forwarded_for: Optional[str], trust_forwarded: bool) -> Optional[str]:
    """
    Remote address used as the rate limit identity, or None if unknown.
    """
    if trust_forwarded and forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    if peer_host and peer_host.strip():
        return peer_host.strip()
    return None
