"""
Hashed TF-IDF vectorizer.

Maps text to a fixed-length, L2-normalized ``float32`` vector using the
hashing trick: every token is hashed (FNV-1a) into one of ``dimensions``
buckets and contributes a signed, log-scaled term-frequency weight.  A second
salted hash decides the sign so that unrelated tokens colliding in a bucket
tend to cancel instead of reinforcing each other.

No model file, no training data, fully deterministic.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Sequence

import numpy as np

from .errors import DimensionMismatchError

DEFAULT_DIMENSIONS = 256

_FNV_OFFSET_BASIS = 0x811C9DC5
_FNV_PRIME = 0x01000193
_SIGN_SALT = "_sign"

_SPLIT_RE = re.compile(r"\W+", re.ASCII)

STOP_WORDS: frozenset[str] = frozenset(
    """
    a an the and or but in on at to for of with by from is it as be was were
    been are am do does did have has had will would could should may might
    shall can not no nor so if then than that this these those what which who
    whom when where why how all each every both few more most some any such
    only own same too very just about above after again also because before
    between during into out over under up down here there other its my your
    his her our their you he she we they me him us them
    """.split()
)


def fnv1a(text: str) -> int:
    """32-bit FNV-1a hash of *text*, returned as an unsigned int."""
    h = _FNV_OFFSET_BASIS
    for ch in text:
        h ^= ord(ch)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def tokenize(text: str) -> list[str]:
    """Lower-case, split on non-word characters, drop short tokens and stop words."""
    return [
        token
        for token in _SPLIT_RE.split(text.lower())
        if len(token) > 1 and token not in STOP_WORDS
    ]


def vectorize(text: str, dimensions: int = DEFAULT_DIMENSIONS) -> np.ndarray:
    """
    Return the hashed TF-IDF vector of *text*.

    Steps:
      1. Tokenize and count term frequencies.
      2. Hash each distinct token to ``fnv1a(token) % dimensions``.
      3. Add ``sign * (1 + ln(tf))`` to that bucket.
      4. L2-normalize (the zero vector is returned unchanged).
    """
    vector = np.zeros(dimensions, dtype=np.float64)
    counts = Counter(tokenize(text))
    if not counts:
        return vector.astype(np.float32)

    for token, tf in counts.items():
        bucket = fnv1a(token) % dimensions
        sign = 1.0 if fnv1a(token + _SIGN_SALT) % 2 == 0 else -1.0
        vector[bucket] += sign * (1.0 + math.log(tf))

    norm = float(np.linalg.norm(vector))
    if norm > 0:
        vector /= norm
    return vector.astype(np.float32)


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """
    Cosine similarity in [-1, 1]; 0 when either vector has zero length.

    Raises :class:`DimensionMismatchError` when the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])

    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb)) / denom


def cosine_distance(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """``1 - cosine_similarity``: 0 for identical direction, 2 for opposite."""
    return 1.0 - cosine_similarity(a, b)
