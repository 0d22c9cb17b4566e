"""Test vector store creation and indexing"""

import importlib.util
import unittest

from langchain_core.documents import Document
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.vectorstores import InMemoryVectorStore

from lmrecipes.config.config import RetrievalSettings
from lmrecipes.splitting import CHUNK_ID_KEY
from lmrecipes.vectorstores import (
    create_vectorstore,
    document_id,
    index_documents,
)
from lmrecipes.utils.logging import LoglistLogger

CHROMA_AVAILABLE = importlib.util.find_spec("langchain_chroma") is not None


class TestCreateVectorstore(unittest.TestCase):

    def test_memory(self):
        store = create_vectorstore(DeterministicFakeEmbedding(size=8))
        self.assertIsInstance(store, InMemoryVectorStore)

    @unittest.skipIf(CHROMA_AVAILABLE, "langchain-chroma is installed")
    def test_chroma_missing(self):
        with self.assertRaises(ImportError):
            create_vectorstore(
                DeterministicFakeEmbedding(size=8),
                RetrievalSettings(vectorstore='chroma'),
            )


class TestDocumentId(unittest.TestCase):

    def test_chunk_id(self):
        doc = Document(page_content="text", metadata={CHUNK_ID_KEY: "c-1"})
        self.assertEqual(document_id(doc), "c-1")

    def test_reproducible(self):
        doc1 = Document(page_content="text", metadata={'source': "a.md"})
        doc2 = Document(page_content="text", metadata={'source': "a.md"})
        doc3 = Document(page_content="text", metadata={'source': "b.md"})
        self.assertEqual(document_id(doc1), document_id(doc2))
        self.assertNotEqual(document_id(doc1), document_id(doc3))


class TestIndexDocuments(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryVectorStore(
            embedding=DeterministicFakeEmbedding(size=16)
        )
        self.docs = [
            Document(page_content="The sky is blue."),
            Document(page_content="Grass is green."),
        ]

    def test_index(self):
        logger = LoglistLogger()
        ids = index_documents(self.store, self.docs, logger)
        self.assertEqual(ids, [document_id(d) for d in self.docs])
        stored = self.store.get_by_ids(ids)
        self.assertEqual(
            sorted(d.page_content for d in stored),
            ["Grass is green.", "The sky is blue."],
        )

    def test_index_twice(self):
        index_documents(self.store, self.docs, LoglistLogger())
        logger = LoglistLogger()
        ids = index_documents(self.store, self.docs, logger)
        self.assertEqual(ids, [])
        self.assertIn("INFO - No new documents to index", logger.get_logs())

    def test_duplicates_and_empty(self):
        logger = LoglistLogger()
        docs = self.docs + [
            Document(page_content="The sky is blue."),
            Document(page_content="  "),
        ]
        ids = index_documents(self.store, docs, logger)
        self.assertEqual(len(ids), 2)
        self.assertEqual(logger.count_logs(level=1), 1)

    def test_search(self):
        index_documents(self.store, self.docs, LoglistLogger())
        results = self.store.similarity_search("Grass is green.", k=1)
        self.assertEqual(results[0].page_content, "Grass is green.")
        self.assertEqual(results[0].id, document_id(self.docs[1]))


if __name__ == "__main__":
    unittest.main()
