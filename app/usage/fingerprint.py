"""
Request Fingerprinting
Stable identity key for unauthenticated callers
"""
import hashlib
import logging
from typing import Optional

from fastapi import Request

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


def generate_fingerprint(
    ip: Optional[str],
    user_agent: Optional[str],
    accept_language: Optional[str],
    accept_encoding: Optional[str]
) -> str:
    """
    Hash client attributes into a 16 character hex key

    Missing values are replaced with "unknown" so the same client always
    maps to the same key.
    """
    parts = [value or UNKNOWN for value in (ip, user_agent, accept_language, accept_encoding)]
    digest = hashlib.sha256("-".join(parts).encode("utf-8")).hexdigest()
    return digest[:16]


def get_client_ip(request: Request) -> str:
    """First x-forwarded-for hop, then x-real-ip, then the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN


def fingerprint_from_request(request: Request) -> str:
    """Fingerprint of the caller behind `request`"""
    fingerprint = generate_fingerprint(
        get_client_ip(request),
        request.headers.get("user-agent"),
        request.headers.get("accept-language"),
        request.headers.get("accept-encoding")
    )
    logger.debug(f"Request fingerprint: {fingerprint}")
    return fingerprint
