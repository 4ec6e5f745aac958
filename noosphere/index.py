# noosphere/index.py
import threading
from typing import Iterable, List, Sequence, Tuple

import faiss
import numpy as np

from .errors import ValidationError


class SiteIndex:
    """
    Exact nearest-site lookup on the unit sphere.

    Sites are unit vectors, so inner product equals cosine and ranking by it
    is ranking by geodesic distance. Backed by a flat faiss index; rebuilt
    from scratch whenever the site set changes.
    """

    DIM = 3

    def __init__(self, sites: Iterable[Tuple[str, Sequence[float]]] = ()):
        self._lock = threading.RLock()
        self.index = faiss.IndexFlatIP(self.DIM)
        self.id_to_key: List[str] = []
        for key, vec in sites:
            self.add(key, vec)

    def __len__(self) -> int:
        return len(self.id_to_key)

    def add(self, key: str, vec: Sequence[float]):
        with self._lock:
            arr = np.asarray(vec, dtype="float32").reshape(1, -1)
            if arr.shape[1] != self.DIM:
                raise ValidationError(f"Site index expects 3-vectors, got {arr.shape[1]}")
            arr /= (np.linalg.norm(arr) + 1e-8)
            self.index.add(arr)
            self.id_to_key.append(key)

    def search(self, query: Sequence[float], top_k: int = 5) -> List[Tuple[str, float]]:
        """Return up to `top_k` (site_id, cosine) pairs, most similar first."""
        with self._lock:
            if self.index.ntotal == 0 or top_k <= 0:
                return []
            q = np.asarray(query, dtype="float32").reshape(1, -1)
            q /= (np.linalg.norm(q) + 1e-8)
            k = min(top_k, self.index.ntotal)
            D, I = self.index.search(q, k)
            results = []
            for score, idx in zip(D[0], I[0]):
                if 0 <= idx < len(self.id_to_key):
                    results.append((self.id_to_key[idx], float(score)))
            return results
