"""Test query analysis"""

import json
import unittest

from langchain_core.documents import Document
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.exceptions import OutputParserException
from langchain_core.vectorstores import InMemoryVectorStore

from lmrecipes.config.config import LanguageModelSettings
from lmrecipes.query_analysis import (
    Search,
    aretrieve_for_queries,
    create_multi_query_generator,
    create_query_analyzer,
    expand_queries,
    filter_documents,
    merge_documents,
    retrieve_for_queries,
)
from lmrecipes.vectorstores import index_documents
from lmrecipes.utils.logging import LoglistLogger

documents = [
    Document(
        page_content="Smith on retrieval",
        metadata={'author': "Smith", 'year': 2023, 'tags': ["rag", "llm"]},
    ),
    Document(
        page_content="Jones on agents",
        metadata={'author': "Jones", 'year': "2024", 'tags': ["agents"]},
    ),
    Document(
        page_content="Anonymous notes",
        metadata={'draft': True},
    ),
]


def _store() -> InMemoryVectorStore:
    store = InMemoryVectorStore(embedding=DeterministicFakeEmbedding(size=16))
    index_documents(store, documents, LoglistLogger())
    return store


class TestExpandQueries(unittest.TestCase):

    def test_question_only(self):
        self.assertEqual(expand_queries("What is RAG?"), ["What is RAG?"])

    def test_expand(self):
        analysis = Search(
            query="RAG", sub_queries=["retrieval", " ", "What is RAG?"]
        )
        queries = expand_queries(
            "What is RAG?", analysis, ["Define RAG", "RAG"]
        )
        self.assertEqual(
            queries, ["What is RAG?", "RAG", "retrieval", "Define RAG"]
        )


class TestFilterDocuments(unittest.TestCase):

    def test_no_filters(self):
        self.assertEqual(len(filter_documents(documents, None)), 3)
        self.assertEqual(len(filter_documents(documents, {})), 3)

    def test_string_case(self):
        result = filter_documents(documents, {'author': "smith"})
        self.assertEqual([d.page_content for d in result], ["Smith on retrieval"])

    def test_numbers(self):
        # numbers also match their string form
        self.assertEqual(len(filter_documents(documents, {'year': 2023})), 1)
        self.assertEqual(len(filter_documents(documents, {'year': 2024})), 1)

    def test_list_metadata(self):
        result = filter_documents(documents, {'tags': "LLM"})
        self.assertEqual([d.page_content for d in result], ["Smith on retrieval"])

    def test_bool(self):
        result = filter_documents(documents, {'draft': True})
        self.assertEqual([d.page_content for d in result], ["Anonymous notes"])
        self.assertEqual(filter_documents(documents, {'draft': 1}), [])

    def test_all_filters(self):
        self.assertEqual(
            filter_documents(documents, {'author': "Smith", 'year': 2024}),
            [],
        )


class TestMergeDocuments(unittest.TestCase):

    def test_merge(self):
        doc1 = Document(page_content="one", id="1")
        doc2 = Document(page_content="two", id="2")
        doc3 = Document(page_content="three")
        merged = merge_documents([[doc1, doc2], [doc2, doc3], [doc3, doc1]])
        self.assertEqual(
            [d.page_content for d in merged], ["one", "two", "three"]
        )


class TestRetrieval(unittest.TestCase):

    def setUp(self):
        self.retriever = _store().as_retriever(search_kwargs={'k': 2})

    def test_single_query(self):
        result = retrieve_for_queries(self.retriever, ["Jones on agents"])
        self.assertEqual(result[0].page_content, "Jones on agents")
        self.assertEqual(len(result), 2)

    def test_several_queries(self):
        result = retrieve_for_queries(
            self.retriever, ["Jones on agents", "Anonymous notes"]
        )
        contents = [d.page_content for d in result]
        self.assertEqual(contents[0], "Jones on agents")
        self.assertIn("Anonymous notes", contents)
        self.assertEqual(len(set(contents)), len(contents))

    def test_k(self):
        result = retrieve_for_queries(
            self.retriever, ["Jones on agents", "Anonymous notes"], k=1
        )
        self.assertEqual(len(result), 1)

    def test_filters(self):
        result = retrieve_for_queries(
            self.retriever,
            ["Smith on retrieval", "Jones on agents"],
            {'author': "Jones"},
        )
        self.assertEqual([d.page_content for d in result], ["Jones on agents"])


class TestAsyncRetrieval(unittest.IsolatedAsyncioTestCase):

    async def test_several_queries(self):
        retriever = _store().as_retriever(search_kwargs={'k': 1})
        result = await aretrieve_for_queries(
            retriever, ["Jones on agents", "Anonymous notes"]
        )
        self.assertEqual(
            [d.page_content for d in result],
            ["Jones on agents", "Anonymous notes"],
        )


class TestQueryAnalyzer(unittest.TestCase):

    def test_analyzer(self):
        reply = json.dumps(
            {
                'query': "retrieval",
                'sub_queries': [],
                'filters': {'author': "Smith", 'year': 2023},
            }
        )
        analyzer = create_query_analyzer(
            LanguageModelSettings(
                model="Debug/analyzer", provider_params={'message': reply}
            )
        )
        search = analyzer.invoke("What did Smith write on retrieval in 2023?")
        self.assertIsInstance(search, Search)
        self.assertEqual(search.query, "retrieval")
        self.assertEqual(search.filters, {'author': "Smith", 'year': 2023})

    def test_analyzer_fenced(self):
        reply = '```json\n{"query": "agents"}\n```'
        analyzer = create_query_analyzer(
            LanguageModelSettings(
                model="Debug/analyzer_fenced",
                provider_params={'message': reply},
            )
        )
        search = analyzer.invoke("Tell me about agents")
        self.assertEqual(search.query, "agents")
        self.assertEqual(search.sub_queries, [])

    def test_analyzer_invalid(self):
        analyzer = create_query_analyzer(
            LanguageModelSettings(
                model="Debug/analyzer_invalid",
                provider_params={'message': "I cannot help"},
            )
        )
        with self.assertRaises(OutputParserException):
            analyzer.invoke("Tell me about agents")


class TestMultiQuery(unittest.TestCase):

    def test_generator(self):
        generator = create_multi_query_generator(
            LanguageModelSettings(
                model="Debug/multi_query",
                provider_params={
                    'message': "1. What is RAG?\n2. Define RAG\n"
                    "3. RAG meaning\n4. Explain RAG"
                },
            ),
            num_queries=3,
        )
        self.assertEqual(
            generator.invoke("RAG?"),
            ["What is RAG?", "Define RAG", "RAG meaning"],
        )

    def test_invalid_num_queries(self):
        with self.assertRaises(ValueError):
            create_multi_query_generator(
                LanguageModelSettings(model="Debug/multi_query"),
                num_queries=0,
            )


if __name__ == "__main__":
    unittest.main()
