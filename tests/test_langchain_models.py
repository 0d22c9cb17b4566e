"""Test the chat and embedding model factories"""

# pyright: basic

import os
import unittest

from pydantic import ValidationError
from langchain_core.language_models.chat_models import BaseChatModel

from lmrecipes.config.config import LanguageModelSettings, EmbeddingSettings
from lmrecipes.language_models.langchain.models import (
    DebugChatModel,
    create_model_from_spec,
    create_model_from_settings,
    create_embedding_model_from_spec,
    create_embedding_model_from_settings,
    langchain_models,
)

OPENAI_KEY_AVAILABLE = os.environ.get("OPENAI_API_KEY") is not None


class TestDebugModels(unittest.TestCase):

    def test_constant_message(self):
        model = create_model_from_spec(
            "Debug/constant", provider_params={'message': "Hello"}
        )
        self.assertIsInstance(model, BaseChatModel)
        self.assertEqual(model.invoke("Hi").content, "Hello")
        self.assertEqual(model.invoke("Hi again").content, "Hello")

    def test_scripted_messages(self):
        model = create_model_from_spec(
            "Debug/test_scripted_messages",
            provider_params={'messages': ["first", "second"]},
        )
        replies = [model.invoke("Hi").content for _ in range(3)]
        self.assertEqual(replies, ["first", "second", "first"])

    def test_counter_messages(self):
        model = create_model_from_spec("Debug/test_counter_messages")
        self.assertEqual(model.invoke("Hi").content, "test_counter_messages 1")
        self.assertEqual(model.invoke("Hi").content, "test_counter_messages 2")

    def test_memoized(self):
        settings = LanguageModelSettings(
            model="Debug/memo", provider_params={'message': "Hello"}
        )
        model = create_model_from_settings(settings)
        self.assertIs(model, create_model_from_settings(settings))
        self.assertIn(settings, langchain_models)
        self.assertIs(
            model,
            create_model_from_spec(
                "Debug/memo", provider_params={'message': "Hello"}
            ),
        )

    def test_different_settings(self):
        model1 = create_model_from_spec("Debug/diff", temperature=0.1)
        model2 = create_model_from_spec("Debug/diff", temperature=0.2)
        self.assertIsNot(model1, model2)

    def test_invalid_source(self):
        with self.assertRaises(ValidationError):
            create_model_from_spec("Kntropix/model")

    def test_invalid_params(self):
        with self.assertRaises(ValidationError):
            create_model_from_spec(
                "Debug/params", provider_params={'top_p': 0.5}
            )

    def test_bind_tools(self):
        model = create_model_from_spec(
            "Debug/bind_tools", provider_params={'message': "Hello"}
        )
        self.assertIsInstance(model, DebugChatModel)
        self.assertIs(model.bind_tools([]), model)

    def test_tool_calls(self):
        model = create_model_from_spec(
            "Debug/tool_calls",
            provider_params={
                'message': "Done",
                'tool_calls': ['{"name": "search", "args": {"q": "x"}}'],
            },
        )
        reply = model.invoke("Find x")
        self.assertEqual(reply.tool_calls[0]['name'], "search")
        self.assertEqual(reply.tool_calls[0]['args'], {'q': "x"})


class TestDebugEmbeddings(unittest.TestCase):

    def test_dimension(self):
        encoder = create_embedding_model_from_spec("Debug/fake", dimension=16)
        vector = encoder.embed_query("Why is the sky blue?")
        self.assertEqual(len(vector), 16)

    def test_deterministic(self):
        encoder = create_embedding_model_from_settings(
            EmbeddingSettings(dense_model="Debug/fake", dimension=8)
        )
        vectors = encoder.embed_documents(["one", "two", "one"])
        self.assertEqual(vectors[0], vectors[2])
        self.assertNotEqual(vectors[0], vectors[1])
        self.assertEqual(encoder.embed_query("one"), vectors[0])

    def test_memoized(self):
        self.assertIs(
            create_embedding_model_from_spec("Debug/fake", dimension=12),
            create_embedding_model_from_spec("Debug/fake", dimension=12),
        )

    def test_invalid_source(self):
        with self.assertRaises(ValidationError):
            create_embedding_model_from_spec("Anthropic/embedding")


@unittest.skipUnless(OPENAI_KEY_AVAILABLE, "OpenAI API key not available")
class TestOpenAIModels(unittest.TestCase):

    def test_create_chat(self):
        model = create_model_from_spec("OpenAI/gpt-4o-mini", max_tokens=50)
        self.assertEqual(model.__class__.__name__, "ChatOpenAI")

    def test_create_embeddings(self):
        encoder = create_embedding_model_from_spec(
            "OpenAI/text-embedding-3-small"
        )
        self.assertEqual(encoder.__class__.__name__, "OpenAIEmbeddings")


if __name__ == "__main__":
    unittest.main()
