"""
probeshell Digest Module (Agent Side)
SHA-256 digests used by the agent.

Provides:
- content_hash: compile-cache key for a snippet of source text
- device_fingerprint: stable device identifier for this install
"""

import base64
import getpass
import platform
import sys
import uuid
from typing import Iterable

from Crypto.Hash import SHA256


def content_hash(source: str) -> str:
    """
    Deterministic digest of source text.

    Format: base64 of the SHA-256 over the UTF-8 bytes.
    """
    digest = SHA256.new(source.encode('utf-8')).digest()
    return base64.b64encode(digest).decode('ascii')


def _fingerprint_parts() -> Iterable[str]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ''
    return (
        platform.node(),
        platform.system(),
        platform.machine(),
        platform.processor(),
        # MAC address (random if none can be read)
        '%012x' % uuid.getnode(),
        sys.executable,
        user,
    )


def device_fingerprint() -> str:
    """
    Derive a device identifier from host hardware/software facts.

    Stable for one install, not guaranteed globally unique.
    """
    h = SHA256.new()
    for part in _fingerprint_parts():
        h.update(part.encode('utf-8'))
        h.update(b'\0')
    return h.hexdigest()
