from __future__ import annotations

import hashlib
import math
import re

from forumai.core.config import EMBED_DIM


_TOKEN_RE = re.compile(r"[\w']+", re.UNICODE)


def _bucket(feature: str) -> tuple[int, float]:
    # Stable slot and signed weight per feature, independent of PYTHONHASHSEED.
    digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
    slot = int.from_bytes(digest[:4], "big") % EMBED_DIM
    sign = -1.0 if digest[4] & 1 else 1.0
    return slot, sign * (0.2 + digest[5] / 255.0)


def _features(text: str) -> list[str]:
    # Unigrams plus adjacent bigrams so reordered sentences still differ a little.
    tokens = _TOKEN_RE.findall(text.lower())
    return tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]


def embed_text(text: str) -> list[float]:
    """Bag-of-features fingerprint, L2 normalised; empty text maps to the zero vector."""
    vector = [0.0] * EMBED_DIM
    for feature in _features(text):
        slot, weight = _bucket(feature)
        vector[slot] += weight
    norm = math.hypot(*vector)
    return [v / norm for v in vector] if norm else vector


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if len(left) != len(right):
        raise ValueError("fingerprint dimension mismatch")
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (left_norm * right_norm)))
