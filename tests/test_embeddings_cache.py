"""Test the embeddings cache"""

import tempfile
import unittest
from pathlib import Path

from langchain_core.embeddings import Embeddings
from langchain_core.stores import InMemoryByteStore

from lmrecipes.config.config import CacheSettings
from lmrecipes.embeddings_cache import (
    CachedEmbeddings,
    FileByteStore,
    InvalidKeyError,
)


class CountingEmbeddings(Embeddings):
    """Records the texts it is asked to embed"""

    def __init__(self) -> None:
        self.document_calls: list[list[str]] = []
        self.query_calls: list[str] = []

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.document_calls.append(list(texts))
        return [[float(len(t)), 1.0] for t in texts]

    def embed_query(self, text: str) -> list[float]:
        self.query_calls.append(text)
        return [float(len(text)), 0.0]


class TestFileByteStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = FileByteStore(Path(self.tmpdir.name) / "store")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_set_get(self):
        self.store.mset([("a", b"one"), ("ns/b", b"two")])
        self.assertEqual(
            self.store.mget(["a", "ns/b", "c"]), [b"one", b"two", None]
        )

    def test_delete(self):
        self.store.mset([("a", b"one")])
        self.store.mdelete(["a", "missing"])
        self.assertEqual(self.store.mget(["a"]), [None])

    def test_yield_keys(self):
        self.store.mset([("a", b"1"), ("ns/b", b"2"), ("ns/c", b"3")])
        self.assertEqual(
            sorted(self.store.yield_keys()), ["a", "ns/b", "ns/c"]
        )
        self.assertEqual(
            sorted(self.store.yield_keys(prefix="ns/")), ["ns/b", "ns/c"]
        )

    def test_invalid_keys(self):
        for key in ["../outside", "a//b", "with space", "", "ns/./a"]:
            with self.subTest(key=key):
                with self.assertRaises(InvalidKeyError):
                    self.store.mset([(key, b"x")])
        self.assertTrue(issubclass(InvalidKeyError, ValueError))


class TestCachedEmbeddings(unittest.TestCase):

    def setUp(self):
        self.underlying = CountingEmbeddings()
        self.store = InMemoryByteStore()
        self.encoder = CachedEmbeddings(
            self.underlying, self.store, namespace="test-model"
        )

    def test_cache_hits(self):
        vectors = self.encoder.embed_documents(["a", "bb", "a"])
        self.assertEqual(vectors, [[1.0, 1.0], [2.0, 1.0], [1.0, 1.0]])
        # repeated texts are embedded once
        self.assertEqual(self.underlying.document_calls, [["a", "bb"]])
        self.assertEqual(self.encoder.misses, 3)
        self.assertEqual(self.encoder.hits, 0)

        vectors = self.encoder.embed_documents(["bb", "ccc"])
        self.assertEqual(vectors, [[2.0, 1.0], [3.0, 1.0]])
        self.assertEqual(self.underlying.document_calls[-1], ["ccc"])
        self.assertEqual(self.encoder.hits, 1)
        self.assertEqual(self.encoder.misses, 4)

    def test_all_cached(self):
        self.encoder.embed_documents(["a", "bb"])
        self.encoder.embed_documents(["bb", "a"])
        self.assertEqual(len(self.underlying.document_calls), 1)

    def test_keys_namespaced(self):
        self.encoder.embed_documents(["a"])
        keys = list(self.store.yield_keys())
        self.assertEqual(len(keys), 1)
        self.assertTrue(keys[0].startswith("test-model/"))

    def test_namespaces_separate(self):
        other = CachedEmbeddings(
            self.underlying, self.store, namespace="other-model"
        )
        self.encoder.embed_documents(["a"])
        other.embed_documents(["a"])
        self.assertEqual(len(self.underlying.document_calls), 2)

    def test_batch_size(self):
        encoder = CachedEmbeddings(
            self.underlying, self.store, batch_size=2
        )
        encoder.embed_documents(["a", "b", "c", "d", "e"])
        self.assertEqual(
            self.underlying.document_calls, [["a", "b"], ["c", "d"], ["e"]]
        )

    def test_invalid_batch_size(self):
        with self.assertRaises(ValueError):
            CachedEmbeddings(self.underlying, self.store, batch_size=0)

    def test_query_not_cached(self):
        self.encoder.embed_query("what?")
        self.encoder.embed_query("what?")
        self.assertEqual(self.underlying.query_calls, ["what?", "what?"])

    def test_query_cached(self):
        encoder = CachedEmbeddings(
            self.underlying, self.store, query_store=self.store
        )
        self.assertEqual(encoder.embed_query("what?"), [5.0, 0.0])
        self.assertEqual(encoder.embed_query("what?"), [5.0, 0.0])
        self.assertEqual(self.underlying.query_calls, ["what?"])
        # query vectors do not replace document vectors
        self.assertEqual(encoder.embed_documents(["what?"]), [[5.0, 1.0]])

    def test_empty(self):
        self.assertEqual(self.encoder.embed_documents([]), [])
        self.assertEqual(self.underlying.document_calls, [])


class TestPersistentCache(unittest.TestCase):

    def test_file_cache(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            underlying = CountingEmbeddings()
            encoder1 = CachedEmbeddings(
                underlying, FileByteStore(tmpdir), namespace="model"
            )
            encoder1.embed_documents(["a", "bb"])

            # a new cache object over the same folder
            encoder2 = CachedEmbeddings(
                underlying, FileByteStore(tmpdir), namespace="model"
            )
            vectors = encoder2.embed_documents(["bb", "a"])
            self.assertEqual(vectors, [[2.0, 1.0], [1.0, 1.0]])
            self.assertEqual(encoder2.hits, 2)
            self.assertEqual(len(underlying.document_calls), 1)


class TestFromSettings(unittest.TestCase):

    def test_disabled(self):
        underlying = CountingEmbeddings()
        encoder = CachedEmbeddings.from_settings(
            underlying, CacheSettings(enabled=False), "Debug/fake"
        )
        self.assertIs(encoder, underlying)

    def test_memory(self):
        encoder = CachedEmbeddings.from_settings(
            CountingEmbeddings(), CacheSettings(folder=""), "Debug/fake"
        )
        self.assertIsInstance(encoder, CachedEmbeddings)
        self.assertIsInstance(encoder.document_store, InMemoryByteStore)
        self.assertEqual(encoder.namespace, "Debug/fake")
        self.assertIsNone(encoder.query_store)

    def test_folder(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            encoder = CachedEmbeddings.from_settings(
                CountingEmbeddings(),
                CacheSettings(
                    folder=tmpdir, namespace="custom", cache_queries=True
                ),
                "Debug/fake",
            )
            self.assertIsInstance(encoder.document_store, FileByteStore)
            self.assertIs(encoder.query_store, encoder.document_store)
            self.assertEqual(encoder.namespace, "custom")
            encoder.embed_documents(["a"])
            keys = list(encoder.document_store.yield_keys())
            self.assertTrue(keys[0].startswith("custom/"))


class TestAsync(unittest.IsolatedAsyncioTestCase):

    async def test_aembed_documents(self):
        underlying = CountingEmbeddings()
        encoder = CachedEmbeddings(underlying, InMemoryByteStore())
        vectors = await encoder.aembed_documents(["a", "bb"])
        self.assertEqual(vectors, [[1.0, 1.0], [2.0, 1.0]])
        await encoder.aembed_documents(["a"])
        self.assertEqual(len(underlying.document_calls), 1)
        self.assertEqual(encoder.hits, 1)

    async def test_aembed_query(self):
        underlying = CountingEmbeddings()
        store = InMemoryByteStore()
        encoder = CachedEmbeddings(underlying, store, query_store=store)
        await encoder.aembed_query("why?")
        await encoder.aembed_query("why?")
        self.assertEqual(underlying.query_calls, ["why?"])


if __name__ == "__main__":
    unittest.main()
