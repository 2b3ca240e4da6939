"""ULID generation for API key record ids and HTTP request ids.

ULIDs sort lexicographically by creation time, so "newest key" queries can
break created_at ties on the id column alone.

Uses the ``python-ulid`` library — do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: Crockford Base32 — charset ``[0-9A-HJKMNP-TV-Z]``, exactly 26 chars.

    Example::

        key_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
    """
    return str(ULID())
