"""
pow.py — hashcash-style proof of work bound to an issued token.

The client must find a `response` string such that SHA-1(token + response),
written out as a 160-character binary string, starts with `difficulty` zeros.
Verifying costs the server one hash; finding a solution costs the client about
2**difficulty hashes. Since the token carries a server timestamp, nothing can
be precomputed before the token is issued.
"""

import hashlib
import itertools
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DIGEST_BITS = 160  # SHA-1


def required_prefix(difficulty: int) -> str:
    """The all-zero bit prefix a solution must hit."""
    if difficulty < 0:
        raise ValueError("difficulty must be non-negative")
    return "0" * difficulty


def hash_to_bits(data: bytes) -> str:
    """
    SHA-1 of `data` as a binary string of exactly DIGEST_BITS characters.

    The zero padding matters: a digest starting with zero bytes is a small
    integer, and its plain binary form would silently lose those leading bits.
    """
    digest = hashlib.sha1(data).hexdigest()
    return bin(int(digest, 16))[2:].zfill(DIGEST_BITS)


def check(token: str, response: str, difficulty: int) -> bool:
    """True if `response` solves the puzzle for `token` at `difficulty`."""
    if difficulty < 0 or difficulty > DIGEST_BITS:
        return False
    bits = hash_to_bits((token + response).encode("utf-8"))
    return bits[:difficulty] == required_prefix(difficulty)


def solve(token: str, difficulty: int, start: int = 0, max_attempts: Optional[int] = None) -> str:
    """
    Brute-force a response for `token` (client side).

    Candidates are decimal counters starting at `start`. Raises RuntimeError
    if `max_attempts` runs out first.
    """
    if difficulty > DIGEST_BITS:
        raise ValueError(f"difficulty above {DIGEST_BITS} bits can never be solved")
    prefix = required_prefix(difficulty)
    encoded = token.encode("utf-8")
    for attempt in itertools.count():
        if max_attempts is not None and attempt >= max_attempts:
            raise RuntimeError(f"no solution within {max_attempts} attempts")
        candidate = str(start + attempt)
        if hash_to_bits(encoded + candidate.encode("utf-8")).startswith(prefix):
            logger.debug("Solved difficulty %d after %d attempts", difficulty, attempt + 1)
            return candidate
