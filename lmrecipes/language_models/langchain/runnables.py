"""
Creates LangChain 'runnable' objects ('kernels'). These objects may be
combined to form LangChain chains, or used by themselves using the
.invoke/.ainvoke/.stream member functions. The created objects are
memoized in the global variables `runnable_library` and
`embeddings_library`.

Each kernel plugs two resources into the LangChain interface:

- a language model object, selected via the models module from the
    specification in config.toml (major, minor or aux model, as
    recorded in the prompt definition).
- a prompt from the prompt library of the prompts module.

Example:

    ```python
    from lmrecipes.language_models.langchain.runnables import (
        create_runnable,
    )

    answerer = create_runnable("query_with_context")  # uses config.toml
    answer = answerer.invoke({'context': "Logistic regression is "
        "used when the outcome variable is binary.",
        'question': "When is logistic regression used?"})

    # override the model of config.toml
    rewriter = create_runnable(
        "multi_query",
        {'model': "Debug/rewriter", 'provider_params': {
            'message': "What is RAG?\\nHow does retrieval work?"}},
        num_queries=2,
    )
    ```

Expected behaviour:
    This module raises exceptions from LangChain and itself.
"""

from pydantic import BaseModel, ConfigDict

from langchain_core.runnables.base import RunnableSerializable
from langchain_core.prompts import (
    ChatPromptTemplate,
    HumanMessagePromptTemplate,
    SystemMessagePromptTemplate,
)
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.output_parsers import StrOutputParser
from langchain_core.embeddings import Embeddings

from lmrecipes.config.config import (
    Settings,
    LanguageModelSettings,
    EmbeddingSettings,
)
from .models import (
    create_model_from_settings,
    create_embedding_model_from_settings,
)

from ..lazy_dict import LazyLoadingDict
from ..prompts import (
    PromptDefinition,
    PromptNames,
    prompt_library,
    _create_prompts,  # type: ignore
)

RunnableParameterValue = str | int | float | bool | tuple[str, ...]
RunnableParameterType = frozenset[tuple[str, RunnableParameterValue]]


def _dict_to_runnable_par(
    pars: dict[str, object],
) -> RunnableParameterType:
    """Convert pars into frozenset with tuple elements instead of lists"""
    temp: dict[str, RunnableParameterValue] = {}
    for key, value in pars.items():
        if isinstance(value, (list, tuple)):
            temp[key] = tuple(str(v) for v in value)  # type: ignore
        else:
            temp[key] = value  # type: ignore
    return frozenset(temp.items())


def _runnable_par_to_dict(
    pars: RunnableParameterType,
) -> dict[str, object]:
    return {
        k: list(v) if isinstance(v, tuple) else v for k, v in pars
    }


class RunnableDefinition(BaseModel):
    """Groups together all properties that define the runnable"""

    kernel_name: PromptNames | str
    settings: LanguageModelSettings
    system_prompt_override: str | None = None
    params: RunnableParameterType = frozenset()

    # required for hashability
    model_config = ConfigDict(frozen=True, extra='forbid')


# Exports the type of the LangChain object
RunnableType = RunnableSerializable[dict[str, str], str]


def _get_prompt_definition(
    kernel_name: PromptNames | str, params: dict[str, object]
) -> PromptDefinition:
    if params:
        # parametrized prompts are not stored in the library
        return _create_prompts(kernel_name, **params)  # type: ignore
    return prompt_library[kernel_name]


def _build_chat_prompt(
    human_prompt: str, system_prompt: str | None
) -> ChatPromptTemplate:
    if system_prompt is not None:
        return ChatPromptTemplate.from_messages(  # type: ignore
            [
                SystemMessagePromptTemplate.from_template(
                    system_prompt
                ),
                HumanMessagePromptTemplate.from_template(human_prompt),
            ]
        )
    return ChatPromptTemplate.from_template(human_prompt)


def _create_runnable(model: RunnableDefinition) -> RunnableType:
    """Assembles a LangChain chain with a prompt from the library and
    a language model as specified by a LanguageModelSettings."""

    definition = _get_prompt_definition(
        model.kernel_name, _runnable_par_to_dict(model.params)
    )
    system_prompt = (
        definition.system_prompt
        if model.system_prompt_override is None
        else model.system_prompt_override
    )
    prompt = _build_chat_prompt(definition.prompt, system_prompt)
    language_model: BaseChatModel = create_model_from_settings(
        model.settings
    )

    kernel: RunnableType = prompt | language_model | StrOutputParser()  # type: ignore
    # .name is inited to None, which we reinitialize here
    kernel.name = (
        f"{model.kernel_name}:"
        + f"{model.settings.get_model_source()}/"
        + f"{model.settings.get_model_name()}"
    )
    return kernel


# global project-wide repository of kernels
runnable_library: LazyLoadingDict[RunnableDefinition, RunnableType] = (
    LazyLoadingDict(_create_runnable)
)
embeddings_library: LazyLoadingDict[EmbeddingSettings, Embeddings] = (
    LazyLoadingDict(create_embedding_model_from_settings)
)


def _to_settings(
    user_settings: (
        dict[str, object] | LanguageModelSettings | Settings | None
    ),
) -> Settings:
    match user_settings:
        case dict() if bool(user_settings):
            try:
                model = LanguageModelSettings(**user_settings)  # type: ignore
            except Exception as e:
                raise ValueError(
                    f"Invalid model definition:\n{e}"
                ) from e
            return Settings(major=model, minor=model, aux=model)
        case LanguageModelSettings():
            return Settings(
                major=user_settings,
                minor=user_settings,
                aux=user_settings,
            )
        case Settings():
            return user_settings
        case None | {}:
            return Settings()
        case _:
            raise ValueError(
                f"Invalid model definition: {user_settings}"
            )


def select_model(
    settings: Settings, kernel_name: PromptNames | str
) -> LanguageModelSettings:
    """The model of the settings that runs the kernel, as given by
    the model_tier of its prompt definition."""
    match prompt_library[kernel_name].model_tier:
        case 'major':
            return settings.major
        case 'aux':
            return settings.aux
        case _:
            return settings.minor


def create_runnable(
    kernel_name: PromptNames | str,
    user_settings: (
        dict[str, object] | LanguageModelSettings | Settings | None
    ) = None,
    system_prompt: str | None = None,
    **kwargs: object,
) -> RunnableType:
    """
    Creates a LangChain kernel (a 'runnable') by combining the prompt
    registered under kernel_name with a language model.

    The model is chosen from the settings according to the model tier
    of the prompt definition (major, minor, aux).

    Settings Hierarchy (highest to lowest priority):
    1. user_settings parameter (if provided)
    2. config.toml file settings
    3. Default settings from Settings class

    Args:
        kernel_name: The name of a predefined prompt, or of a prompt
            added with create_prompt.
        user_settings: Optional settings to override the default
            configuration. Can be either:
            - dict: fields of a LanguageModelSettings, used for all
                tiers
            - LanguageModelSettings: used for all tiers
            - Settings: the tier is selected from this object
            - None: Use settings from config.toml or defaults
        system_prompt: replaces the system prompt of the definition.
        **kwargs: parameters of parametrized prompts, such as
            num_queries for 'multi_query'.

    Returns:
        A RunnableType object, i.e. prompt | model | StrOutputParser.
        The chain accepts a dictionary of template variables and
        returns a string response.

    Raises:
        ValueError: If kernel_name is not supported or if user_settings
            is invalid. Model names are not checked at this stage;
            failure occurs when the kernel is invoked.
        ImportError: for not installed provider packages.
    """
    settings: Settings = _to_settings(user_settings)
    _get_prompt_definition(kernel_name, dict(kwargs))  # validates

    definition = RunnableDefinition(
        kernel_name=kernel_name,
        settings=select_model(settings, kernel_name),
        system_prompt_override=system_prompt,
        params=_dict_to_runnable_par(dict(kwargs)),
    )
    return runnable_library[definition]


def create_embeddings(
    settings: (
        dict[str, object] | EmbeddingSettings | Settings | None
    ) = None,
) -> Embeddings:
    """
    Creates a LangChain embeddings object from a configuration
    object.

    Args:
        settings: an EmbeddingSettings object, a dictionary with its
            fields, or a Settings object. If None (default), the
            settings are read from the configuration file.

    Returns:
        a LangChain object that embeds text by calling
            embed_documents or embed_query.

    Raises:
        ValidationError, TypeError: for invalid spec
        ImportError: for missing libraries

    Example:
    ```python
    encoder = create_embeddings({'dense_model': "Debug/fake"})
    vector = encoder.embed_query("Why is the sky blue?")
    ```
    """
    if not bool(settings):  # includes empty dict
        settings = Settings().embeddings
    elif isinstance(settings, Settings):
        settings = settings.embeddings
    elif isinstance(settings, dict):
        settings = EmbeddingSettings(**settings)  # type: ignore

    return embeddings_library[settings]  # type: ignore


def create_kernel_from_objects(
    human_prompt: str,
    *,
    system_prompt: str | None = None,
    language_model: (
        BaseChatModel | LanguageModelSettings | Settings | None
    ) = None,
) -> RunnableType:
    """
    Creates a LangChain runnable from a prompt text and a language
    model. This kernel is not registered in the kernel library.

    Args:
        human_prompt: prompt text
        system_prompt: system prompt text
        language_model: either a LangChain BaseChatModel, or
            a LanguageModelSettings object, or a Settings object, or
            None (default). In these latter cases the minor model is
            used.

    Returns:
        a LangChain runnable, a type aliased as `RunnableType`.
    """
    if language_model is None:
        language_model = Settings()
    if isinstance(language_model, Settings):
        language_model = language_model.minor
    if isinstance(language_model, LanguageModelSettings):
        name = f"Custom:{language_model.model}"
        language_model = create_model_from_settings(language_model)
    else:
        name = "Custom"

    prompt = _build_chat_prompt(human_prompt, system_prompt)
    kernel: RunnableType = prompt | language_model | StrOutputParser()  # type: ignore
    kernel.name = name
    return kernel
