"""
This module creates the LangChain chat model and embedding objects
from the configuration settings, abstracting from vendor details. The
objects are memoized in two global repositories, `langchain_models`
and `langchain_embeddings`, keyed by the (frozen) settings object.

The settings are given as a LanguageModelSettings/EmbeddingSettings
object, usually a member of the Settings object read from config.toml,
or as keyword arguments to the create_*_from_spec functions.

The 'Debug' provider creates fake models that do not call any service:

- chat: a DebugChatModel (a GenericFakeChatModel accepting tools).
    With provider_params={'message': m} it always replies m; with
    provider_params={'messages': [m1, m2]} it cycles through the list;
    otherwise it replies "Message 1", "Message 2", ... With
    provider_params={'tool_calls': ['{"name": "f", "args": {...}}']}
    it calls those tools until it receives their results.
- embeddings: a DeterministicFakeEmbedding of the configured
    dimension, mapping equal texts to equal vectors.

Examples:

```python
from lmrecipes.language_models.langchain.models import (
    create_model_from_spec,
    create_model_from_settings,
)
from lmrecipes.config.config import LanguageModelSettings

settings = LanguageModelSettings(model="OpenAI/gpt-4o", temperature=0.7)
model = create_model_from_settings(settings)

model = create_model_from_spec(model="Anthropic/claude-3-5-haiku-latest")
```

Behaviour:
    Raises exceptions from LangChain and from itself. Provider packages
    are imported when a model of that provider is first requested;
    a missing package raises an ImportError with the pip command.
"""

import json
from typing import Any

from pydantic import Field
from langchain_core.callbacks import CallbackManagerForLLMRun
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.language_models.fake_chat_models import (
    GenericFakeChatModel,
)
from langchain_core.embeddings import Embeddings
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    ToolCall,
    ToolMessage,
)
from langchain_core.outputs import ChatGeneration, ChatResult

from ..lazy_dict import LazyLoadingDict

from lmrecipes.config.config import (
    LanguageModelSettings,
    EmbeddingSettings,
    ModelSource,
    EmbeddingSource,
    ParamValue,
)


def _missing(provider: str, package: str) -> ImportError:
    return ImportError(
        f"{provider} models require the '{package}' package. "
        f"Install it with: pip install {package}"
    )


class DebugChatModel(GenericFakeChatModel):
    """
    The fake chat model of the Debug provider. Tools may be bound to
    it (they are ignored). If tool_calls is set, the model calls those
    tools whenever the last message it receives is not a tool result,
    and otherwise replies with its next message.
    """

    tool_calls: list[ToolCall] = Field(default_factory=list)

    def bind_tools(self, tools: Any, **kwargs: Any) -> 'DebugChatModel':
        return self

    def _generate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: CallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> ChatResult:
        if self.tool_calls and not (
            messages and isinstance(messages[-1], ToolMessage)
        ):
            reply = AIMessage(content="", tool_calls=self.tool_calls)
            return ChatResult(generations=[ChatGeneration(message=reply)])
        return super()._generate(
            messages, stop=stop, run_manager=run_manager, **kwargs
        )


def _parse_debug_tool_calls(values: object) -> list[ToolCall]:
    # each entry: '{"name": "multiply", "args": {"a": 3, "b": 4}}'
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, list):
        raise ValueError(f"Invalid Debug tool_calls: {values}")
    calls: list[ToolCall] = []
    for index, value in enumerate(values):
        try:
            data = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Invalid Debug tool call {value!r}: {e}"
            ) from e
        if not isinstance(data, dict) or 'name' not in data:
            raise ValueError(
                f"Debug tool call must be a JSON object with a name: "
                f"{value!r}"
            )
        calls.append(
            ToolCall(
                name=str(data['name']),
                args=data.get('args') or {},
                id=data.get('id') or f"debug-call-{index + 1}",
            )
        )
    return calls


def _create_debug_model(model: LanguageModelSettings) -> BaseChatModel:
    from ..message_iterator import (
        yield_message,
        yield_constant_message,
        yield_messages,
    )

    params = model.provider_params
    tool_calls = (
        _parse_debug_tool_calls(params['tool_calls'])
        if 'tool_calls' in params
        else []
    )
    if isinstance(params.get('messages'), list):
        return DebugChatModel(
            name="Debug scripted chat",
            messages=yield_messages(params['messages']),  # type: ignore
            tool_calls=tool_calls,
        )
    if 'message' in params:
        return DebugChatModel(
            name="Debug constant chat",
            messages=yield_constant_message(str(params['message'])),
            tool_calls=tool_calls,
        )
    return DebugChatModel(
        name="Debug chat",
        messages=yield_message(model.get_model_name()),
        tool_calls=tool_calls,
    )


def _create_model_instance(
    model: LanguageModelSettings,
) -> BaseChatModel:
    """
    Factory function to create LangChain chat models while checking
    permissible sources.
    """
    model_source: ModelSource = model.get_model_source()
    model_name: str = model.get_model_name()
    kwargs: dict[str, Any]
    match model_source:
        case "Anthropic":
            try:
                from langchain_anthropic import ChatAnthropic
            except ImportError as e:
                raise _missing("Anthropic", "langchain-anthropic") from e

            kwargs = {
                "model_name": model_name,
                "temperature": model.temperature,
                "max_tokens_to_sample": model.max_tokens or 1024,
                "timeout": model.timeout,
                "max_retries": model.max_retries,
                "stop": None,
            }
            kwargs.update(model.provider_params)
            return ChatAnthropic(**kwargs)

        case "Gemini":
            try:
                from langchain_google_genai import (
                    ChatGoogleGenerativeAI,
                )
            except ImportError as e:
                raise _missing("Gemini", "langchain-google-genai") from e

            kwargs = {
                "model": model_name,
                "temperature": model.temperature,
                "max_retries": model.max_retries,
            }
            if model.max_tokens is not None:
                kwargs["max_output_tokens"] = model.max_tokens
            if model.timeout is not None:
                kwargs["timeout"] = model.timeout
            kwargs.update(model.provider_params)
            return ChatGoogleGenerativeAI(**kwargs)

        case "Mistral":
            try:
                from langchain_mistralai import ChatMistralAI
            except ImportError as e:
                raise _missing("Mistral", "langchain-mistralai") from e

            kwargs = {
                "model_name": model_name,
                "temperature": model.temperature,
                "max_retries": model.max_retries,
            }
            if model.max_tokens is not None:
                kwargs["max_tokens"] = model.max_tokens
            if model.timeout is not None:
                kwargs["timeout"] = int(model.timeout)
            kwargs.update(model.provider_params)
            return ChatMistralAI(**kwargs)

        case "OpenAI":
            try:
                from langchain_openai import ChatOpenAI
            except ImportError as e:
                raise _missing("OpenAI", "langchain-openai") from e

            kwargs = {
                "model": model_name,
                "temperature": model.temperature,
                "max_retries": model.max_retries,
            }
            if model.max_tokens is not None:
                kwargs["max_tokens"] = model.max_tokens
            if model.timeout is not None:
                kwargs["timeout"] = model.timeout
            kwargs.update(model.provider_params)
            return ChatOpenAI(**kwargs)

        case "Debug":
            return _create_debug_model(model)

        case _:
            raise ValueError(
                f"Unreachable code reached: invalid source {model_source}"
            )


def _create_embedding_instance(
    model: EmbeddingSettings,
) -> Embeddings:
    """
    Factory function to create LangChain embedding models while
    checking permissible sources.
    """
    model_source: EmbeddingSource = model.get_model_source()
    model_name: str = model.get_model_name()
    match model_source:
        case "Gemini":
            try:
                from langchain_google_genai import (
                    GoogleGenerativeAIEmbeddings,
                )
            except ImportError as e:
                raise _missing("Gemini", "langchain-google-genai") from e

            return GoogleGenerativeAIEmbeddings(
                model=model_name,
                task_type="retrieval_document",
            )

        case "Mistral":
            try:
                from langchain_mistralai import MistralAIEmbeddings
            except ImportError as e:
                raise _missing("Mistral", "langchain-mistralai") from e

            return MistralAIEmbeddings(model=model_name)

        case "OpenAI":
            try:
                from langchain_openai import OpenAIEmbeddings
            except ImportError as e:
                raise _missing("OpenAI", "langchain-openai") from e

            return OpenAIEmbeddings(model=model_name)

        case "SentenceTransformers":
            try:
                from langchain_huggingface import HuggingFaceEmbeddings
            except ImportError as e:
                raise _missing(
                    "SentenceTransformers", "langchain-huggingface"
                ) from e

            return HuggingFaceEmbeddings(
                model_name=f"sentence-transformers/{model_name}",
                encode_kwargs={"normalize_embeddings": True},
            )

        case "Debug":
            from langchain_core.embeddings import (
                DeterministicFakeEmbedding,
            )

            return DeterministicFakeEmbedding(size=model.dimension)

        case _:
            raise ValueError(
                f"Unreachable code reached: invalid source {model_source}"
            )


# Public interface----------------------------------------------
langchain_models: LazyLoadingDict[LanguageModelSettings, BaseChatModel] = \
    LazyLoadingDict(_create_model_instance)
langchain_embeddings: LazyLoadingDict[EmbeddingSettings, Embeddings] = \
    LazyLoadingDict(_create_embedding_instance)


def create_model_from_spec(
    model: str,
    *,
    temperature: float = 0.1,
    max_tokens: int | None = None,
    max_retries: int = 2,
    timeout: float | None = None,
    provider_params: dict[str, ParamValue] | None = None,
) -> BaseChatModel:
    """
    Create a LangChain chat model from its specification.

    Args:
        model: the model in the form source/model, such as
            'OpenAI/gpt-4o'

    Returns:
        a LangChain chat model object.

    Raises ValueError, TypeError, ValidationError, ImportError

    Example:
        ```python
        model = create_model_from_spec("Debug/test",
                    provider_params={'message': "Hello"})
        model.invoke("Hi").content  # 'Hello'
        ```
    """
    spec = LanguageModelSettings(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        max_retries=max_retries,
        timeout=timeout,
        provider_params=provider_params or {},
    )
    return langchain_models[spec]


def create_model_from_settings(
    settings: LanguageModelSettings,
) -> BaseChatModel:
    """
    Create a LangChain chat model from a LanguageModelSettings object,
    such as the major, minor or aux members of Settings.

    Raises ValueError, TypeError, ValidationError, ImportError
    """
    return langchain_models[settings]


def create_embedding_model_from_spec(
    dense_model: str, *, dimension: int = 256
) -> Embeddings:
    """
    Create a LangChain embedding model from its specification, such
    as 'OpenAI/text-embedding-3-small'.

    Raises ValueError, TypeError, ValidationError, ImportError
    """
    spec = EmbeddingSettings(dense_model=dense_model, dimension=dimension)
    return langchain_embeddings[spec]


def create_embedding_model_from_settings(
    settings: EmbeddingSettings,
) -> Embeddings:
    """
    Create a LangChain embedding model from an EmbeddingSettings
    object.

    Raises ValueError, TypeError, ValidationError, ImportError
    """
    return langchain_embeddings[settings]
