import faiss
import numpy as np
from typing import List, Optional, Sequence, Tuple


class VectorStore:
    """
    In-memory inner-product index over L2-normalized vectors, so scores are
    cosine similarities. Row positions map back to item IDs.
    """

    def __init__(self, dim: int):
        self.dim = dim
        self.index = faiss.IndexFlatIP(dim)
        self.ids: List[str] = []

    @staticmethod
    def _prepare(vector: Sequence[float]) -> np.ndarray:
        vec = np.array([vector]).astype("float32")
        faiss.normalize_L2(vec)
        return vec

    def add(self, item_id: str, vector: Sequence[float]) -> bool:
        """Adds the vector; vectors of another dimension are skipped."""
        if len(vector) != self.dim:
            return False
        self.index.add(self._prepare(vector))
        self.ids.append(item_id)
        return True

    def search(self, vector: Sequence[float], k: int = 5) -> List[Tuple[str, float]]:
        if self.index.ntotal == 0 or len(vector) != self.dim:
            return []
        k = min(k, self.index.ntotal)
        scores, indices = self.index.search(self._prepare(vector), k)
        return [
            (self.ids[idx], float(score))
            for idx, score in zip(indices[0].tolist(), scores[0].tolist())
            if idx != -1
        ]

    def nearest(self, vector: Sequence[float]) -> Optional[Tuple[str, float]]:
        results = self.search(vector, k=1)
        return results[0] if results else None
