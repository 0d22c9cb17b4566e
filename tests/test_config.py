"""Test settings module"""

import os
import tempfile
import unittest
from pathlib import Path

from pydantic import ValidationError

from lmrecipes.config.config import (
    Settings,
    LanguageModelSettings,
    EmbeddingSettings,
    SplitterSettings,
    CacheSettings,
    RetrievalSettings,
    serialize_settings,
    export_settings,
    create_default_config_file,
    load_settings,
    format_pydantic_error_message,
)


class TestLanguageModelSettings(unittest.TestCase):

    def test_model_spec(self):
        spec = LanguageModelSettings(model="OpenAI/gpt-4o")
        self.assertEqual(spec.get_model_source(), "OpenAI")
        self.assertEqual(spec.get_model_name(), "gpt-4o")

    def test_model_spec_whitespace(self):
        spec = LanguageModelSettings(model="  OpenAI  / gpt-4o ")
        self.assertEqual(spec.model, "OpenAI/gpt-4o")

    def test_invalid_provider(self):
        with self.assertRaises(ValidationError):
            LanguageModelSettings(model="Kntropix/model")

    def test_invalid_specs(self):
        for spec in ["", "OpenAI", "OpenAI/gpt/4o", "OpenAI/", "Open\nAI/x"]:
            with self.subTest(spec=spec):
                with self.assertRaises(ValidationError):
                    LanguageModelSettings(model=spec)

    def test_temperature_range(self):
        with self.assertRaises(ValidationError):
            LanguageModelSettings(model="OpenAI/gpt-4o", temperature=2.5)

    def test_provider_params(self):
        spec = LanguageModelSettings(
            model="OpenAI/gpt-4o", provider_params={'top_p': 0.9}
        )
        self.assertEqual(spec.provider_params['top_p'], 0.9)

    def test_provider_params_invalid(self):
        with self.assertRaises(ValidationError):
            LanguageModelSettings(
                model="OpenAI/gpt-4o", provider_params={'message': "hi"}
            )

    def test_debug_params(self):
        spec = LanguageModelSettings(
            model="Debug/test", provider_params={'messages': ["a", "b"]}
        )
        self.assertEqual(spec.provider_params['messages'], ["a", "b"])

    def test_hashability(self):
        spec1 = LanguageModelSettings(
            model="Debug/test", provider_params={'messages': ["a", "b"]}
        )
        spec2 = LanguageModelSettings(
            model="Debug/test", provider_params={'messages': ["a", "b"]}
        )
        self.assertEqual(hash(spec1), hash(spec2))
        self.assertEqual({spec1: 1}[spec2], 1)

    def test_frozen(self):
        spec = LanguageModelSettings(model="OpenAI/gpt-4o")
        with self.assertRaises(ValidationError):
            spec.temperature = 0.5  # type: ignore

    def test_from_instance(self):
        spec = LanguageModelSettings(model="OpenAI/gpt-4o", max_tokens=100)
        other = spec.from_instance(temperature=0.7, max_tokens=None)
        self.assertEqual(other.model, "OpenAI/gpt-4o")
        self.assertEqual(other.temperature, 0.7)
        self.assertEqual(other.max_tokens, 100)


class TestOtherSettings(unittest.TestCase):

    def test_embedding_settings(self):
        spec = EmbeddingSettings(dense_model="Debug/fake", dimension=8)
        self.assertEqual(spec.get_model_source(), "Debug")
        self.assertEqual(spec.get_model_name(), "fake")

    def test_embedding_invalid_source(self):
        with self.assertRaises(ValidationError):
            EmbeddingSettings(dense_model="Anthropic/embed")

    def test_splitter_overlap(self):
        with self.assertRaises(ValidationError):
            SplitterSettings(chunk_size=100, chunk_overlap=100)
        spec = SplitterSettings(chunk_size=100, chunk_overlap=20)
        self.assertEqual(spec.splitter, 'recursive')

    def test_invalid_splitter(self):
        with self.assertRaises(ValidationError):
            SplitterSettings(splitter='semantic')  # type: ignore

    def test_retrieval_settings(self):
        spec = RetrievalSettings()
        self.assertEqual(spec.vectorstore, 'memory')
        self.assertFalse(spec.validate_context)
        with self.assertRaises(ValidationError):
            RetrievalSettings(num_queries=11)
        with self.assertRaises(ValidationError):
            RetrievalSettings(k=0)

    def test_cache_settings(self):
        spec = CacheSettings()
        self.assertTrue(spec.enabled)
        self.assertIsNone(spec.namespace)


class TestSettings(unittest.TestCase):

    def test_set_settings_given(self):
        sets = Settings(**{'minor': {'model': "Debug/minor"}})
        self.assertEqual(sets.minor.get_model_source(), "Debug")
        self.assertEqual(sets.minor.get_model_name(), "minor")

    def test_set_settings_objects(self):
        sets = Settings(
            major=LanguageModelSettings(model="Debug/major"),
            retrieval=RetrievalSettings(k=2),
        )
        self.assertEqual(sets.major.model, "Debug/major")
        self.assertEqual(sets.retrieval.k, 2)

    def test_set_settings_invalid(self):
        with self.assertRaises(ValidationError):
            Settings(**{'major': {'model': "Kntropix/major"}})

    def test_serialize(self):
        sets = Settings(
            major=LanguageModelSettings(
                model="Debug/major", provider_params={'message': "hi"}
            )
        )
        text = serialize_settings(sets)
        self.assertIn("[major]", text)
        self.assertIn('model = "Debug/major"', text)
        self.assertIn("[retrieval]", text)
        # None values are not written out
        self.assertNotIn("timeout", text)
        self.assertEqual(str(sets), text)


class TestSettingsFile(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "config.toml"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_export_and_load(self):
        sets = Settings(
            major=LanguageModelSettings(
                model="Debug/major",
                temperature=0.5,
                provider_params={'messages': ["one", "two"]},
            ),
            splitter=SplitterSettings(chunk_size=500, chunk_overlap=50),
            cache=CacheSettings(folder="", cache_queries=True),
        )
        export_settings(sets, self.path)
        self.assertTrue(self.path.exists())

        loaded = load_settings(self.path)
        self.assertEqual(loaded.major, sets.major)
        self.assertEqual(loaded.splitter, sets.splitter)
        self.assertEqual(loaded.cache, sets.cache)

    def test_export_creates_folder(self):
        path = Path(self.tmpdir.name) / "sub" / "config.toml"
        export_settings(Settings(), path)
        self.assertTrue(path.exists())

    def test_create_default(self):
        self.path.write_text("garbage", encoding="utf-8")
        create_default_config_file(self.path)
        loaded = load_settings(self.path)
        self.assertEqual(loaded.major, Settings().major)

    def test_load_missing(self):
        with self.assertRaises(FileNotFoundError):
            load_settings(Path(self.tmpdir.name) / "missing.toml")

    def test_load_invalid(self):
        self.path.write_text(
            '[major]\nmodel = "Kntropix/major"\n', encoding="utf-8"
        )
        with self.assertRaises(ValueError):
            load_settings(self.path)

    def test_load_partial(self):
        self.path.write_text(
            '[retrieval]\nk = 7\nmulti_query = true\n', encoding="utf-8"
        )
        loaded = load_settings(self.path)
        self.assertEqual(loaded.retrieval.k, 7)
        self.assertTrue(loaded.retrieval.multi_query)
        # defaults for the rest
        self.assertEqual(loaded.retrieval.num_queries, 3)


class TestEnvironment(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "config.toml"
        os.environ['LMR_RETRIEVAL'] = '{"k": 9}'

    def tearDown(self):
        del os.environ['LMR_RETRIEVAL']
        self.tmpdir.cleanup()

    def test_env_fills_missing_section(self):
        self.path.write_text(
            '[major]\nmodel = "Debug/major"\n', encoding="utf-8"
        )
        loaded = load_settings(self.path)
        self.assertEqual(loaded.major.model, "Debug/major")
        self.assertEqual(loaded.retrieval.k, 9)


class TestErrorMessage(unittest.TestCase):

    def test_format_message(self):
        message = (
            "1 validation error\n"
            "  For further information visit https://errors.pydantic.dev"
        )
        self.assertEqual(
            format_pydantic_error_message(message), "1 validation error"
        )


if __name__ == "__main__":
    unittest.main()
