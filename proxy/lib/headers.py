#!/usr/bin/env python3
"""
Header handling for proxied requests and responses.
"""

from typing import Mapping

from multidict import CIMultiDict

# Describe the body bytes, which the proxy decodes and re-encodes
BODY_HEADERS = frozenset({'content-length', 'content-encoding', 'transfer-encoding'})

# Recomputed or renegotiated by the outbound client
UPSTREAM_SKIP_HEADERS = BODY_HEADERS | {'host', 'connection', 'accept-encoding'}

# Added by the aiohttp client when a request lacks them
CLIENT_AUTO_HEADERS = ('Accept', 'Content-Type', 'User-Agent')


def _without(headers: Mapping[str, str], skip: frozenset) -> CIMultiDict:
    return CIMultiDict(
        (k, v) for k, v in headers.items()
        if k.lower() not in skip
    )


def sanitize(headers: Mapping[str, str]) -> CIMultiDict:
    """Copy of headers without content-length, content-encoding and transfer-encoding.

    Order, casing and repeated keys of everything else are kept.
    """
    return _without(headers, BODY_HEADERS)


def sanitize_request_headers(headers: Mapping[str, str]) -> CIMultiDict:
    """Headers to send upstream: sanitize() minus host, connection, accept-encoding."""
    return _without(headers, UPSTREAM_SKIP_HEADERS)


def missing_auto_headers(headers: Mapping[str, str]) -> tuple:
    """Client auto headers the inbound request did not carry (for skip_auto_headers)."""
    present = {k.lower() for k in headers.keys()}
    return tuple(name for name in CLIENT_AUTO_HEADERS if name.lower() not in present)


def content_type(headers: Mapping[str, str]) -> str:
    return headers.get('content-type', '') or ''


def is_json(headers: Mapping[str, str]) -> bool:
    return 'application/json' in content_type(headers)


def is_event_stream(headers: Mapping[str, str]) -> bool:
    return 'text/event-stream' in content_type(headers)
