"""
Pluggable semantic-similarity strategies for claim comparison.

The cross-referencer and the in-document conflict check only need a callable
``similarity(a, b) -> float`` in [0, 1]. Two deterministic strategies ship
here; anything with the same call signature (e.g. an embedding model wrapper)
can be dropped into PipelineConfig instead.
"""

from collections import Counter
from typing import Protocol

import numpy as np

from clinical_digest.utils import content_tokens


class SimilarityStrategy(Protocol):
    def __call__(self, a: str, b: str) -> float: ...


class TokenCosineSimilarity:
    """Cosine similarity over bag-of-words term counts (stopwords removed)."""

    name = "token_cosine"

    def __call__(self, a: str, b: str) -> float:
        ca, cb = Counter(content_tokens(a)), Counter(content_tokens(b))
        if not ca or not cb:
            return 0.0
        vocab = sorted(set(ca) | set(cb))
        va = np.array([ca.get(t, 0) for t in vocab], dtype=float)
        vb = np.array([cb.get(t, 0) for t in vocab], dtype=float)
        denom = np.linalg.norm(va) * np.linalg.norm(vb)
        if denom == 0:
            return 0.0
        return float(np.clip(va.dot(vb) / denom, 0.0, 1.0))


class JaccardSimilarity:
    """Set overlap of content tokens."""

    name = "jaccard"

    def __call__(self, a: str, b: str) -> float:
        sa, sb = set(content_tokens(a)), set(content_tokens(b))
        if not sa or not sb:
            return 0.0
        return len(sa & sb) / len(sa | sb)
