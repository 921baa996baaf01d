"""Request utility functions for handling common request operations."""

import hashlib
import ipaddress
import logging

from fastapi import Request

logger = logging.getLogger(__name__)

# Peers allowed to supply X-Real-IP (the reverse proxy on the same host)
LOCAL_PROXY_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})

# Longest User-Agent kept on session records and audit entries
MAX_USER_AGENT_LENGTH = 512


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str | None:
    """Get the client IP address from a request.

    Security Priority Order:
    1. CF-Connecting-IP (set by the Cloudflare edge in front of both origins)
    2. X-Real-IP (only when the direct peer is a local reverse proxy)
    3. Direct client connection

    X-Forwarded-For is NOT trusted as it can be easily spoofed. The SSO relay
    binds redemption tokens to this value, so it must not be client-controlled.

    Args:
        request: The FastAPI request object

    Returns:
        Client IP address or None if not available
    """
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        ip = cf_ip.strip()
        if _is_valid_ip(ip):
            return ip
        else:
            logger.warning(f"Invalid CF-Connecting-IP: {cf_ip}")

    if request.client and request.client.host in LOCAL_PROXY_HOSTS:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            else:
                logger.warning(f"Invalid X-Real-IP: {real_ip}")

    if request.client:
        return request.client.host

    return None


def hash_client_ip(ip: str | None) -> str:
    """SHA-256 hex digest of a client IP ("unknown" when absent)."""
    return hashlib.sha256((ip or "unknown").encode("utf-8")).hexdigest()


def get_request_host(request: Request) -> str:
    """Host (and port, if any) the client addressed, lower-cased."""
    return (request.headers.get("host") or request.url.netloc).lower()


def get_user_agent(request: Request) -> str | None:
    """User-Agent header, stripped of control characters and truncated."""
    user_agent = request.headers.get("user-agent")
    if not user_agent:
        return None
    cleaned = "".join(ch for ch in user_agent if ch.isprintable()).strip()
    return cleaned[:MAX_USER_AGENT_LENGTH] or None
