"""VNID generation and key classification.

Every entity is permanently identified by a VNID: an underscore followed by
the base-62 encoding of a random UUID. slugIds can never start with an
underscore, so any key can be classified without a lookup.
"""

from __future__ import annotations

import re
import uuid

_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"

SLUG_ID_RE = re.compile(r"^[A-Za-z0-9.-]{1,32}$")

# The VNID of the system user.
SYSTEM_VNID = "_0"


def new_vnid() -> str:
    """Generate a new random VNID."""
    value = uuid.uuid4().int
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 62)
        digits.append(_ALPHABET[rem])
    return "_" + "".join(reversed(digits or ["0"]))


def is_vnid(key: str) -> bool:
    """Whether *key* is a VNID rather than a slugId."""
    return key.startswith("_") and len(key) > 1 and all(c in _ALPHABET for c in key[1:])
