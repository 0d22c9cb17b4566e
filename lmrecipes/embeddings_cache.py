"""
Caching of embeddings, so that texts already embedded are not sent
again to the embedding model when a corpus is re-indexed.

The cache is a key-value byte store (langchain ByteStore). Vectors are
stored as JSON under a key formed by a namespace and the SHA-256 hash
of the text. The namespace should identify the embedding model, so
that vectors of different models never collide; `from_settings` uses
the model specification when no namespace is configured.

Main classes:
    FileByteStore: a ByteStore keeping one file per key in a folder
    CachedEmbeddings: an Embeddings object wrapping another one and
        the store

Example:

    ```python
    from lmrecipes.config.config import Settings
    from lmrecipes.language_models.langchain.runnables import (
        create_embeddings,
    )
    from lmrecipes.embeddings_cache import CachedEmbeddings

    settings = Settings()
    encoder = CachedEmbeddings.from_settings(
        create_embeddings(settings.embeddings),
        settings.cache,
        settings.embeddings.dense_model,
    )
    vectors = encoder.embed_documents(["a text", "another text"])
    vectors = encoder.embed_documents(["a text"])  # from cache
    ```
"""

import json
import re
from collections.abc import Iterator, Sequence
from pathlib import Path

from langchain_core.embeddings import Embeddings
from langchain_core.stores import ByteStore, InMemoryByteStore

from lmrecipes.config.config import CacheSettings
from lmrecipes.utils.hash import sha256_hash
from lmrecipes.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)

_VALID_KEY = re.compile(r"^[A-Za-z0-9_.\-/]+$")


class InvalidKeyError(ValueError):
    """Raised for store keys that cannot be mapped to a file"""


class FileByteStore(ByteStore):
    """A ByteStore that keeps each value in a file under a root
    folder. Keys may contain '/' to create subfolders, but may not
    leave the root folder.

    Args:
        root_path: the root folder, created if missing
    """

    def __init__(self, root_path: str | Path) -> None:
        self.root_path = Path(root_path).absolute()
        self.root_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        if not _VALID_KEY.match(key):
            raise InvalidKeyError(f"Invalid characters in key: {key}")
        parts = key.split('/')
        if any(part in ("", ".", "..") for part in parts):
            raise InvalidKeyError(f"Invalid path in key: {key}")
        return self.root_path.joinpath(*parts)

    def mget(self, keys: Sequence[str]) -> list[bytes | None]:
        values: list[bytes | None] = []
        for key in keys:
            path = self._get_full_path(key)
            values.append(path.read_bytes() if path.is_file() else None)
        return values

    def mset(self, key_value_pairs: Sequence[tuple[str, bytes]]) -> None:
        for key, value in key_value_pairs:
            path = self._get_full_path(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(value)

    def mdelete(self, keys: Sequence[str]) -> None:
        for key in keys:
            path = self._get_full_path(key)
            if path.is_file():
                path.unlink()

    def yield_keys(self, prefix: str | None = None) -> Iterator[str]:
        for path in sorted(self.root_path.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(self.root_path).as_posix()
            if prefix is None or key.startswith(prefix):
                yield key


def _namespace_prefix(namespace: str) -> str:
    if not namespace:
        return ""
    cleaned = re.sub(r"[^A-Za-z0-9_.\-]", "_", namespace)
    return cleaned + "/"


class CachedEmbeddings(Embeddings):
    """
    Embeddings that look up vectors in a store before calling the
    underlying embedding model.

    Args:
        underlying_embeddings: the embedding model
        document_store: the store for document embeddings
        namespace: prefix of the keys, usually the model name
        batch_size: number of texts sent to the model at a time. If
            None, all missing texts are sent at once
        query_store: the store for query embeddings. If None, queries
            are not cached

    Attributes:
        hits, misses: number of texts found/not found in the store
            by embed_documents
    """

    def __init__(
        self,
        underlying_embeddings: Embeddings,
        document_store: ByteStore,
        *,
        namespace: str = "",
        batch_size: int | None = None,
        query_store: ByteStore | None = None,
    ) -> None:
        if batch_size is not None and batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        self.underlying_embeddings = underlying_embeddings
        self.document_store = document_store
        self.query_store = query_store
        self.namespace = namespace
        self.batch_size = batch_size
        self.hits = 0
        self.misses = 0

    def _key(self, text: str) -> str:
        return _namespace_prefix(self.namespace) + sha256_hash(text)

    def _query_key(self, text: str) -> str:
        # queries may be embedded differently from documents
        return _namespace_prefix(self.namespace) + "q-" + sha256_hash(text)

    def _batches(self, texts: list[str]) -> Iterator[list[str]]:
        size = self.batch_size or max(len(texts), 1)
        for start in range(0, len(texts), size):
            yield texts[start : start + size]

    @staticmethod
    def _decode(value: bytes | None) -> list[float] | None:
        if value is None:
            return None
        return json.loads(value.decode('utf-8'))

    @staticmethod
    def _encode(vector: list[float]) -> bytes:
        return json.dumps(vector).encode('utf-8')

    def _missing_texts(
        self, texts: list[str], vectors: list[list[float] | None]
    ) -> list[str]:
        missing = [t for t, v in zip(texts, vectors) if v is None]
        self.misses += len(missing)
        self.hits += len(texts) - len(missing)
        return list(dict.fromkeys(missing))

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, computing only those not in the store.

        Returns:
            the vectors, in the order of texts
        """
        keys = [self._key(t) for t in texts]
        vectors = [self._decode(v) for v in self.document_store.mget(keys)]
        missing = self._missing_texts(texts, vectors)

        computed: dict[str, list[float]] = {}
        for batch in self._batches(missing):
            batch_vectors = self.underlying_embeddings.embed_documents(
                batch
            )
            self.document_store.mset(
                [
                    (self._key(t), self._encode(v))
                    for t, v in zip(batch, batch_vectors)
                ]
            )
            computed.update(zip(batch, batch_vectors))

        return [
            v if v is not None else computed[t]
            for t, v in zip(texts, vectors)
        ]

    async def aembed_documents(
        self, texts: list[str]
    ) -> list[list[float]]:
        keys = [self._key(t) for t in texts]
        values = await self.document_store.amget(keys)
        vectors = [self._decode(v) for v in values]
        missing = self._missing_texts(texts, vectors)

        computed: dict[str, list[float]] = {}
        for batch in self._batches(missing):
            batch_vectors = (
                await self.underlying_embeddings.aembed_documents(batch)
            )
            await self.document_store.amset(
                [
                    (self._key(t), self._encode(v))
                    for t, v in zip(batch, batch_vectors)
                ]
            )
            computed.update(zip(batch, batch_vectors))

        return [
            v if v is not None else computed[t]
            for t, v in zip(texts, vectors)
        ]

    def embed_query(self, text: str) -> list[float]:
        """Embed a query, using the query store if one was given."""
        if self.query_store is None:
            return self.underlying_embeddings.embed_query(text)

        key = self._query_key(text)
        cached = self._decode(self.query_store.mget([key])[0])
        if cached is not None:
            return cached
        vector = self.underlying_embeddings.embed_query(text)
        self.query_store.mset([(key, self._encode(vector))])
        return vector

    async def aembed_query(self, text: str) -> list[float]:
        if self.query_store is None:
            return await self.underlying_embeddings.aembed_query(text)

        key = self._query_key(text)
        cached = self._decode((await self.query_store.amget([key]))[0])
        if cached is not None:
            return cached
        vector = await self.underlying_embeddings.aembed_query(text)
        await self.query_store.amset([(key, self._encode(vector))])
        return vector

    @classmethod
    def from_settings(
        cls,
        underlying_embeddings: Embeddings,
        settings: CacheSettings,
        model_name: str,
        *,
        batch_size: int | None = None,
    ) -> Embeddings:
        """
        Wrap an embedding model with the cache described by the
        settings.

        Args:
            underlying_embeddings: the embedding model
            settings: the cache settings. If the cache is disabled,
                the embedding model is returned unchanged
            model_name: used as namespace if none is configured
            batch_size: see class documentation

        Returns:
            an Embeddings object
        """
        if not settings.enabled:
            return underlying_embeddings

        store: ByteStore
        if settings.folder:
            store = FileByteStore(settings.folder)
        else:
            store = InMemoryByteStore()
        namespace = settings.namespace or model_name
        logger.info(
            f"Embeddings cache for '{namespace}' in "
            f"{settings.folder or 'memory'}"
        )
        return cls(
            underlying_embeddings,
            store,
            namespace=namespace,
            batch_size=batch_size,
            query_store=store if settings.cache_queries else None,
        )
