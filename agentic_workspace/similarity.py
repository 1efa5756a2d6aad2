"""
Text similarity for Agentic Workspace.

Fact deduplication, semantic queries and context relevance all score
pairs of texts through a ``TextSimilarity``. The default scores sentence
embeddings (all-MiniLM-L6-v2) so paraphrases land close together; the
lexical backend scores term-frequency cosine and needs no model.
"""

import logging
import threading
from collections import OrderedDict
from typing import Any, Optional, Protocol

import numpy as np

from .config import MemoryConfig
from .errors import ConfigurationError
from .utils import cosine_similarity

logger = logging.getLogger("agentic_workspace.similarity")


DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"


class TextSimilarity(Protocol):
    def score(self, a: str, b: str) -> float:
        """Similarity of two texts in [0, 1]."""
        ...


class LexicalSimilarity:
    """Term-frequency cosine over Unicode word tokens."""

    def score(self, a: str, b: str) -> float:
        return cosine_similarity(a, b)


class EmbeddingSimilarity:
    """Cosine similarity of sentence embeddings.

    The model loads on first use and is shared by every instance that
    names it. When it cannot be loaded (no network for the first
    download, a broken cache) scoring degrades to lexical cosine and a
    warning is logged once.

    Args:
        model_name: sentence-transformers model id
        device: Torch device the model runs on
        model: Preloaded encoder exposing ``encode`` (tests, custom models)
        cache_size: Embeddings kept per instance, least recently used first out
    """

    _shared_models: dict[str, Any] = {}
    _load_lock = threading.Lock()

    def __init__(
        self,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        device: str = "cpu",
        model: Any = None,
        cache_size: int = 2048,
    ):
        self.model_name = model_name
        self.device = device
        self.cache_size = cache_size
        self._model = model
        self._unavailable = False
        self._lexical = LexicalSimilarity()
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._cache_lock = threading.Lock()
        self._encode_lock = threading.Lock()

    def _get_model(self):
        if self._model is not None or self._unavailable:
            return self._model

        from sentence_transformers import SentenceTransformer

        with self._load_lock:
            model = self._shared_models.get(self.model_name)
            if model is None:
                logger.info("Loading embedding model %s", self.model_name)
                try:
                    model = SentenceTransformer(self.model_name, device=self.device)
                except (OSError, RuntimeError, ValueError) as e:
                    logger.warning(
                        "Embedding model %s unavailable (%s: %s); using lexical similarity",
                        self.model_name, type(e).__name__, e,
                    )
                    self._unavailable = True
                    return None
                self._shared_models[self.model_name] = model
            self._model = model
        return self._model

    def embed(self, text: str) -> Optional[np.ndarray]:
        """Embedding of ``text``, or None when no model is available."""
        with self._cache_lock:
            cached = self._cache.get(text)
            if cached is not None:
                self._cache.move_to_end(text)
                return cached

        model = self._get_model()
        if model is None:
            return None
        with self._encode_lock:
            vector = np.asarray(model.encode(text, convert_to_numpy=True), dtype=np.float32)

        with self._cache_lock:
            self._cache[text] = vector
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return vector

    def score(self, a: str, b: str) -> float:
        if not a.strip() or not b.strip():
            return 0.0
        vec_a = self.embed(a)
        vec_b = self.embed(b) if vec_a is not None else None
        if vec_a is None or vec_b is None:
            return self._lexical.score(a, b)

        denom = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
        if denom == 0.0:
            return 0.0
        return max(0.0, min(1.0, float(np.dot(vec_a, vec_b) / denom)))


def build_similarity(config: MemoryConfig) -> TextSimilarity:
    """Build the backend named by ``config.similarity_backend``."""
    backend = config.similarity_backend.lower()
    if backend == "embedding":
        return EmbeddingSimilarity(config.embedding_model)
    if backend == "lexical":
        return LexicalSimilarity()
    raise ConfigurationError(
        f"Unknown similarity backend '{config.similarity_backend}' (expected 'embedding' or 'lexical')"
    )
