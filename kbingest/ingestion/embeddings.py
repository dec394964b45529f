from __future__ import annotations

import hashlib
import math
import re
from collections import Counter

from kbingest.core.config import EMBED_DIM

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def _slot(token: str, dim: int) -> tuple[int, float]:
    # Feature hashing: one stable slot and sign per token.
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim, (1.0 if value >> 63 == 0 else -1.0)


def embed_text(text: str, dim: int = EMBED_DIM) -> list[float]:
    """Deterministic local embedding; no model call, so ingestion never blocks on a provider."""
    vector = [0.0] * dim
    counts = Counter(_TOKEN_RE.findall(text.lower()))
    for token, count in counts.items():
        idx, sign = _slot(token, dim)
        # Sublinear term frequency keeps repeated boilerplate from dominating.
        vector[idx] += sign * (1.0 + math.log(count))

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


def embed_batch(texts: list[str]) -> list[list[float]]:
    # Deterministic per text, so replays upsert identical vectors.
    return [embed_text(text) for text in texts]
