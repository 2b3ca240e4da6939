"""Unit tests for ULID generation (newsportal/utils/ulid.py).

Key ids and request ids are ULIDs: 26 chars, Crockford Base32, unique, and
sortable by creation time so the newest key wins id tie-breaks.
"""

from __future__ import annotations

import re
import threading
import time

from newsportal.utils.ulid import generate_ulid

# Crockford Base32 charset: 0-9 and A-Z, excluding I, L, O, U
ULID_PATTERN = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")


def test_format() -> None:
    value = generate_ulid()
    assert isinstance(value, str)
    assert ULID_PATTERN.match(value), value


def test_unique_1000() -> None:
    ulids = [generate_ulid() for _ in range(1000)]
    assert len(set(ulids)) == 1000
    assert all(ULID_PATTERN.match(u) for u in ulids)


def test_lexicographic_order_across_milliseconds() -> None:
    """Later ids sort after earlier ones: newest_valid() relies on this for ties."""
    first_batch = [generate_ulid() for _ in range(10)]
    time.sleep(0.002)
    second_batch = [generate_ulid() for _ in range(10)]
    assert all(b > a for a in first_batch for b in second_batch)


def test_thread_safe() -> None:
    results: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        ulids = [generate_ulid() for _ in range(50)]
        with lock:
            results.extend(ulids)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 500


def test_valid_as_request_id_header() -> None:
    value = generate_ulid()
    assert all(0x20 <= ord(c) <= 0x7E for c in value)
    assert not set("\r\n\x00:") & set(value)
