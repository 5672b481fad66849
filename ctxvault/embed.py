"""
Embedding capability.

``Embedder.embed(text)`` returns a fixed-dimension vector or None.  The
default implementation wraps a sentence-transformers model, loaded lazily
on first use (heavy import).  Every embedder handed to the vault is wrapped
in :class:`BoundedEmbedder`, which enforces a timeout and turns any failure
into None so callers degrade to full-text ranking instead of failing.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Dict, List, Optional, Protocol

from ctxvault.errors import CapabilityDegraded

logger = logging.getLogger(__name__)

_models: Dict[str, object] = {}
_model_lock = threading.Lock()


def _get_model(model_name: str = "all-MiniLM-L6-v2"):
    """Lazy-load SentenceTransformer (heavy import), keyed by model name."""
    if model_name not in _models:
        with _model_lock:
            if model_name not in _models:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError as exc:
                    raise CapabilityDegraded(
                        "sentence-transformers is not installed "
                        "(pip install 'ctxvault[embed]')"
                    ) from exc
                _models[model_name] = SentenceTransformer(model_name)
    return _models[model_name]


class Embedder(Protocol):
    """Anything with ``embed(text) -> list[float] | None``."""

    def embed(self, text: str) -> Optional[List[float]]:
        ...


class SentenceTransformerEmbedder:
    """Local sentence-transformers model, normalized output vectors."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name

    def embed(self, text: str) -> Optional[List[float]]:
        model = _get_model(self.model_name)
        return model.encode(text, normalize_embeddings=True).tolist()


class BoundedEmbedder:
    """Timeout-bounded, never-raising wrapper around another embedder.

    After the first :class:`CapabilityDegraded` the wrapper stops calling
    the inner embedder; ``degraded_reason`` tells why.
    """

    def __init__(self, inner: Optional[Embedder], timeout_s: float = 10.0):
        self._inner = inner
        self._timeout_s = timeout_s
        self._executor: Optional[ThreadPoolExecutor] = None
        self._exec_lock = threading.Lock()
        self.degraded_reason: Optional[str] = (
            None if inner is not None else "embedding disabled"
        )
        self._disabled = inner is None

    @property
    def available(self) -> bool:
        return not self._disabled

    def _pool(self) -> ThreadPoolExecutor:
        with self._exec_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=2, thread_name_prefix="ctxvault-embed",
                )
            return self._executor

    def embed(self, text: str) -> Optional[List[float]]:
        """Embed *text*; None on empty input, timeout or any failure."""
        if self._disabled or not text or not text.strip():
            return None
        future = self._pool().submit(self._inner.embed, text)
        try:
            vector = future.result(timeout=self._timeout_s)
        except FutureTimeout:
            logger.warning(f"Embedding timed out after {self._timeout_s}s")
            self.degraded_reason = "embedding timed out"
            return None
        except CapabilityDegraded as exc:
            logger.warning(f"Embedding unavailable: {exc}")
            self.degraded_reason = str(exc)
            self._disabled = True
            return None
        except Exception as exc:
            logger.warning(f"Embedding failed: {exc}")
            self.degraded_reason = f"embedding failed: {exc}"
            return None
        if vector is None or len(vector) == 0:
            return None
        return [float(x) for x in vector]

    def close(self) -> None:
        with self._exec_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None
