"""Embedding providers behind one async contract.

========== ======================================= ====== =============================
Provider   Model                                   Dim    Notes
========== ======================================= ====== =============================
hash       (none)                                  256    No ML, keyword-level only
transformer minilm / bge-base / jina-code / qodo   varies Local HuggingFace inference
voyage     voyage-code-3, voyage-3-lite, ...       varies Remote HTTP API
========== ======================================= ====== =============================

Every provider exposes ``embed`` / ``embed_batch`` plus ``name``, ``model``,
``dimension`` and ``max_batch_size``.  :meth:`EmbeddingProvider.embed_batch`
chunks the input by ``max_batch_size`` and, when a chunk call fails, retries
that chunk element by element so one bad input does not sink the batch.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from hashlib import blake2b
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .config import BASE_DIR, EmbeddingSettings
from .errors import ConductorError, ProviderError
from .http_client import ProviderHTTPClient
from .models import PartialFailure

logger = logging.getLogger(__name__)

MODEL_CACHE_DIR: Path = BASE_DIR / "models"

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass
class BatchEmbedding:
    """Vectors aligned with the input; ``None`` where the item failed."""

    vectors: List[Optional[List[float]]]
    failures: PartialFailure = field(default_factory=PartialFailure)


class EmbeddingProvider(ABC):
    name: str = "base"
    model: str = ""
    dimension: int = 0
    max_batch_size: int = 128

    @property
    def model_key(self) -> str:
        """Identifies the vector space: vectors with different keys never mix."""
        return f"{self.name}-{self.model}-{self.dimension}"

    @abstractmethod
    async def embed(self, text: str, input_type: str = "document") -> List[float]:
        ...

    async def _embed_many(self, texts: List[str], input_type: str) -> List[List[float]]:
        return [await self.embed(text, input_type) for text in texts]

    async def embed_batch(self, texts: List[str], input_type: str = "document") -> BatchEmbedding:
        result = BatchEmbedding(vectors=[None] * len(texts))
        size = max(1, self.max_batch_size)
        for start in range(0, len(texts), size):
            chunk = texts[start: start + size]
            try:
                vectors = await self._embed_many(chunk, input_type)
                if len(vectors) != len(chunk):
                    raise ProviderError(
                        f"{self.name} returned {len(vectors)} vectors for {len(chunk)} inputs",
                        provider=self.name,
                    )
            except ConductorError as exc:
                logger.warning(
                    "%s batch of %d failed (%s), falling back to single requests",
                    self.name, len(chunk), exc.message,
                )
                await self._embed_each(chunk, start, input_type, result)
                continue
            result.vectors[start: start + len(chunk)] = vectors
        return result

    async def _embed_each(
        self,
        chunk: List[str],
        offset: int,
        input_type: str,
        result: BatchEmbedding,
    ) -> None:
        for i, text in enumerate(chunk):
            try:
                result.vectors[offset + i] = await self.embed(text, input_type)
            except ConductorError as exc:
                result.failures.add(str(offset + i), exc.code, exc.message)

    async def aclose(self) -> None:
        """Release network or model resources."""


# ===================================================================
# Hash provider (zero-dependency)
# ===================================================================

class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic token-hashing embedder, no ML dependencies.

    Provides keyword-level similarity only, which is enough for local use
    and for tests.
    """

    name = "hash"

    def __init__(self, dimension: int = 256, max_batch_size: int = 128) -> None:
        self.model = "hash"
        self.dimension = dimension
        self.max_batch_size = max_batch_size

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dimension
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return _l2_normalize(vec)

    async def embed(self, text: str, input_type: str = "document") -> List[float]:
        return self.embed_text(text)


# ===================================================================
# Local transformer provider (optional torch / transformers)
# ===================================================================

TRANSFORMER_MODELS: Dict[str, Dict[str, Any]] = {
    "qodo-1.5b": {
        "hf_id": "Qodo/Qodo-Embed-1-1.5B",
        "dim": 1536,
        "max_tokens": 8192,
        "pooling": "last_token",
        "trust_remote_code": True,
    },
    "jina-code": {
        "hf_id": "jinaai/jina-embeddings-v2-base-code",
        "dim": 768,
        "max_tokens": 8192,
        "pooling": "mean",
        "trust_remote_code": True,
    },
    "bge-base": {
        "hf_id": "BAAI/bge-base-en-v1.5",
        "dim": 768,
        "max_tokens": 512,
        "pooling": "cls",
        "trust_remote_code": False,
    },
    "minilm": {
        "hf_id": "sentence-transformers/all-MiniLM-L6-v2",
        "dim": 384,
        "max_tokens": 256,
        "pooling": "mean",
        "trust_remote_code": False,
    },
}


class TransformerEmbeddingProvider(EmbeddingProvider):
    """HuggingFace encoder run on-device in a worker thread.

    Pooling is per model: ``last_token`` (Qodo), ``mean`` (Jina, MiniLM)
    or ``cls`` (BGE).  Weights are downloaded on first use into
    ``~/.codegraph/models``.
    """

    name = "transformer"

    def __init__(
        self,
        model: str,
        cache_dir: Optional[Path] = None,
        device: str = "cpu",
        max_batch_size: int = 16,
    ) -> None:
        if model not in TRANSFORMER_MODELS:
            raise ValueError(
                f"Unknown transformer model '{model}'. Available: {', '.join(TRANSFORMER_MODELS)}"
            )
        spec = TRANSFORMER_MODELS[model]
        self.model = model
        self.hf_id: str = spec["hf_id"]
        self.dimension = spec["dim"]
        self.max_length: int = spec["max_tokens"]
        self.pooling: str = spec["pooling"]
        self.trust_remote_code: bool = spec["trust_remote_code"]
        self.max_batch_size = max_batch_size
        self.cache_dir = cache_dir or MODEL_CACHE_DIR
        self.device = device
        self._model: Any = None
        self._tokenizer: Any = None

    def _load_model(self) -> None:
        if self._model is not None:
            return
        try:
            from transformers import AutoModel, AutoTokenizer
        except ImportError as exc:
            raise ProviderError(
                "torch and transformers are required for transformer embeddings. "
                "Install with: pip install codegraph-conductor[embeddings]",
                provider=self.name,
            ) from exc

        logger.info("Loading embedding model '%s' (%s)", self.model, self.hf_id)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        try:
            self._tokenizer = AutoTokenizer.from_pretrained(
                self.hf_id, cache_dir=str(self.cache_dir), trust_remote_code=self.trust_remote_code,
            )
            self._model = AutoModel.from_pretrained(
                self.hf_id, cache_dir=str(self.cache_dir), trust_remote_code=self.trust_remote_code,
            )
            self._model.eval()
            self._model.to(self.device)
        except (OSError, ValueError, RuntimeError) as exc:
            raise ProviderError(
                f"Failed to load embedding model '{self.model}' ({self.hf_id}): {exc}",
                provider=self.name,
            ) from exc

    def _pool(self, last_hidden_states: Any, attention_mask: Any) -> Any:
        import torch

        if self.pooling == "cls":
            return last_hidden_states[:, 0]
        if self.pooling == "mean":
            mask = attention_mask.unsqueeze(-1).expand(last_hidden_states.size()).float()
            return (last_hidden_states * mask).sum(dim=1) / mask.sum(dim=1).clamp(min=1e-9)
        # last_token
        left_padding = attention_mask[:, -1].sum() == attention_mask.shape[0]
        if left_padding:
            return last_hidden_states[:, -1]
        lengths = attention_mask.sum(dim=1) - 1
        batch = torch.arange(last_hidden_states.shape[0], device=last_hidden_states.device)
        return last_hidden_states[batch, lengths]

    def _encode(self, texts: List[str]) -> List[List[float]]:
        import torch
        import torch.nn.functional as F

        self._load_model()
        batch_dict = self._tokenizer(
            texts, max_length=self.max_length, padding=True, truncation=True, return_tensors="pt",
        )
        batch_dict = {k: v.to(self.device) for k, v in batch_dict.items()}
        with torch.no_grad():
            outputs = self._model(**batch_dict)
        pooled = self._pool(outputs.last_hidden_state, batch_dict["attention_mask"])
        return F.normalize(pooled, p=2, dim=1).cpu().tolist()

    async def embed(self, text: str, input_type: str = "document") -> List[float]:
        return (await asyncio.to_thread(self._encode, [text]))[0]

    async def _embed_many(self, texts: List[str], input_type: str) -> List[List[float]]:
        return await asyncio.to_thread(self._encode, texts)


# ===================================================================
# Voyage AI provider (HTTP)
# ===================================================================

VOYAGE_DIMENSIONS: Dict[str, int] = {
    "voyage-3": 1024,
    "voyage-3-lite": 512,
    "voyage-code-3": 1024,
    "voyage-finance-2": 1024,
    "voyage-law-2": 1024,
    "voyage-multilingual-2": 1024,
    "voyage-2": 1024,
    "voyage-large-2": 1536,
    "voyage-code-2": 1536,
}


class VoyageEmbeddingProvider(EmbeddingProvider):
    """``POST /v1/embeddings`` with ``{model, input, input_type}``."""

    name = "voyage"

    def __init__(
        self,
        api_key: str,
        model: str = "voyage-code-3",
        base_url: str = "https://api.voyageai.com",
        timeout_seconds: float = 30.0,
        max_batch_size: int = 128,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.dimension = VOYAGE_DIMENSIONS.get(model, 1024)
        self.max_batch_size = max_batch_size
        self._http = ProviderHTTPClient(
            self.name, base_url, api_key=api_key, timeout_seconds=timeout_seconds, transport=transport,
        )

    def _parse(self, body: Dict[str, Any], expected: int) -> List[List[float]]:
        data = body.get("data")
        if not isinstance(data, list) or len(data) != expected:
            raise ProviderError("Voyage AI returned an invalid embedding response", provider=self.name)
        # Responses carry an ``index``; order by it when present.
        data = sorted(data, key=lambda d: d.get("index", 0)) if all("index" in d for d in data) else data
        vectors: List[List[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or len(embedding) != self.dimension:
                raise ProviderError(
                    f"Voyage AI returned a vector of unexpected shape for model '{self.model}'",
                    provider=self.name,
                )
            vectors.append([float(v) for v in embedding])
        return vectors

    async def embed(self, text: str, input_type: str = "document") -> List[float]:
        body = await self._http.post_json(
            "/v1/embeddings", {"model": self.model, "input": text, "input_type": input_type},
        )
        return self._parse(body, 1)[0]

    async def _embed_many(self, texts: List[str], input_type: str) -> List[List[float]]:
        logger.debug("voyage embed_batch count=%d", len(texts))
        body = await self._http.post_json(
            "/v1/embeddings", {"model": self.model, "input": texts, "input_type": input_type},
        )
        return self._parse(body, len(texts))

    async def aclose(self) -> None:
        await self._http.aclose()


# ===================================================================
# Factory
# ===================================================================

def get_embedding_provider(
    settings: EmbeddingSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingProvider:
    """Return the configured provider; unknown providers fall back to hash."""
    provider = settings.provider.lower()
    if provider == "voyage":
        if not settings.api_key:
            logger.warning("Voyage embeddings configured without an API key, falling back to hash.")
            return HashEmbeddingProvider(settings.dimension, settings.max_batch_size)
        return VoyageEmbeddingProvider(
            api_key=settings.api_key,
            model=settings.model,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            max_batch_size=settings.max_batch_size,
            transport=transport,
        )
    if provider == "transformer":
        return TransformerEmbeddingProvider(settings.model, device=settings.device)
    if provider != "hash":
        logger.warning("Unknown embedding provider '%s', falling back to hash.", settings.provider)
    return HashEmbeddingProvider(settings.dimension, settings.max_batch_size)


# ===================================================================
# Utility
# ===================================================================

def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    """Cosine similarity in ``[-1, 1]``; zero-length or mismatched vectors give ``0.0``."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a < 1e-12 or norm_b < 1e-12:
        return 0.0
    return dot / (norm_a * norm_b)


def is_zero_vector(vec: List[float]) -> bool:
    return not any(abs(v) > 1e-12 for v in vec)


def _l2_normalize(vec: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return vec
    return [v / norm for v in vec]
