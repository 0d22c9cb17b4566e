"""
Read and write configuration file.

This file also contains the definitions of the model providers,
splitters and vector stores supported in the package. Settings are
read from config.toml in the working folder. Sections missing from
config.toml may be given by environment variables with the LMR_
prefix, e.g.

    LMR_MAJOR='{"model": "Anthropic/claude-3-5-haiku-latest"}'
"""

from pathlib import Path
from typing import Any, Literal, Self

from pydantic import (
    Field,
    field_validator,
    model_validator,
    BaseModel,
)
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# Supported providers. These must also be handled by the factory
# functions in language_models/langchain/models.py
ModelSource = Literal[
    'OpenAI', 'Anthropic', 'Mistral', 'Gemini', 'Debug'
]
EmbeddingSource = Literal[
    'OpenAI', 'Mistral', 'Gemini', 'SentenceTransformers', 'Debug'
]
SplitterType = Literal['recursive', 'character', 'markdown', 'null']
VectorStoreType = Literal['memory', 'chroma']

# values allowed in provider_params
ParamPrimitive = str | int | float | bool | None
ParamValue = ParamPrimitive | list[str]

DEFAULT_CONFIG_FILE = "config.toml"
ENV_PREFIX = "LMR_"


def _validate_spec(spec: str, sources: tuple[str, ...]) -> str:
    cleaned_spec = spec.strip()
    if not cleaned_spec:
        raise ValueError("Model specification is empty")
    if '\n' in cleaned_spec or '\r' in cleaned_spec:
        raise ValueError(
            "Model specification cannot contain newlines or carriage"
            + " returns."
        )
    tokens = cleaned_spec.split('/')
    if len(tokens) != 2:
        raise ValueError(
            "Model specification must contain the model provider and "
            + "the model name separated by a single '/'."
        )
    source = tokens[0].strip()
    name = tokens[1].strip()
    if source not in sources:
        raise ValueError(
            f"Invalid model provider: '{source}'. "
            + f"Must be one of {sources}."
        )
    if not name:
        raise ValueError("Model name is empty")
    return source + '/' + name


class LanguageModelSettings(BaseModel):
    """
    Specification of a chat model.

    Attributes:
        model: 'provider/model', e.g. 'OpenAI/gpt-4o-mini'
        temperature: float between 0.0 and 2.0
        max_tokens: max number of generated tokens
        max_retries: max number of retry attempts
        timeout: timeout when waiting for response
        provider_params: provider-specific parameters
    """

    model: str = Field(
        description="Model specification in the form "
        + "'model_provider/model' (e.g., 'OpenAI/gpt-4o')"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=2.0,
        description="Controls randomness in model responses (0.0-2.0)",
    )
    max_tokens: int | None = Field(
        default=None,
        ge=1,
        description="Maximum number of tokens to generate",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Maximum number of retry attempts",
    )
    timeout: float | None = Field(
        default=None, gt=0, description="Request timeout in seconds"
    )
    provider_params: dict[str, ParamValue] = Field(
        default_factory=dict,
        description="Provider-specific parameters (e.g., top_p)",
    )

    model_config = SettingsConfigDict(frozen=True, extra='forbid')

    def __hash__(self) -> int:
        params = tuple(
            (k, tuple(v) if isinstance(v, list) else v)
            for k, v in sorted(self.provider_params.items())
        )
        return hash(
            (
                self.model,
                self.temperature,
                self.max_tokens,
                self.max_retries,
                self.timeout,
                params,
            )
        )

    def get_model_source(self) -> ModelSource:
        return self.model.split('/')[0]  # type: ignore

    def get_model_name(self) -> str:
        return self.model.split('/')[1]

    def from_instance(self, **overrides: Any) -> 'LanguageModelSettings':
        """A copy of this specification with some fields replaced.
        Fields given as None are kept from the original."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return LanguageModelSettings(**data)

    @field_validator('model', mode='after')
    @classmethod
    def validate_model_spec(cls, spec: str) -> str:
        return _validate_spec(spec, ModelSource.__args__)

    @model_validator(mode='after')
    def validate_provider_params(self) -> Self:
        ALLOWED_PARAMS = {
            'OpenAI': {
                'frequency_penalty',
                'presence_penalty',
                'top_p',
                'seed',
            },
            'Anthropic': {'top_p', 'top_k', 'stop_sequences'},
            'Mistral': {'top_p', 'random_seed', 'safe_mode'},
            'Gemini': {'top_p', 'top_k', 'candidate_count'},
            'Debug': {'message', 'messages', 'tool_calls'},
        }

        source: ModelSource = self.get_model_source()
        allowed = ALLOWED_PARAMS[source]
        invalid_params = set(self.provider_params.keys()) - allowed
        if invalid_params:
            raise ValueError(
                f"Invalid provider_params for {source}: "
                f"{invalid_params}. Allowed: {allowed}"
            )
        return self


class EmbeddingSettings(BaseModel):
    """
    Specification of the embedding model.

    Attributes:
        dense_model: 'provider/model', e.g.
            'OpenAI/text-embedding-3-small'
        dimension: size of vectors of the Debug provider
    """

    dense_model: str = Field(
        description="Model specification in the form "
        + "'model_provider/model' (e.g., 'OpenAI/text-embedding-3-small')"
    )
    dimension: int = Field(
        default=256,
        gt=0,
        description="Vector size (only used by the Debug provider)",
    )

    model_config = SettingsConfigDict(frozen=True, extra='forbid')

    def get_model_source(self) -> EmbeddingSource:
        return self.dense_model.split('/')[0]  # type: ignore

    def get_model_name(self) -> str:
        return self.dense_model.split('/')[1]

    @field_validator('dense_model', mode='after')
    @classmethod
    def validate_model_spec(cls, spec: str) -> str:
        return _validate_spec(spec, EmbeddingSource.__args__)


class SplitterSettings(BaseModel):
    """Text splitter used before indexing."""

    splitter: SplitterType = 'recursive'
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)
    add_start_index: bool = False

    model_config = SettingsConfigDict(frozen=True, extra='forbid')

    @model_validator(mode='after')
    def validate_overlap(self) -> Self:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller "
                f"than chunk_size ({self.chunk_size})"
            )
        return self


class CacheSettings(BaseModel):
    """Cache of computed embeddings.

    Attributes:
        enabled: use the cache
        folder: folder of the file store. If empty, an in-memory
            store is used
        namespace: key prefix. Defaults to the embedding model name,
            so that vectors of different models never collide
        cache_queries: also cache query embeddings
    """

    enabled: bool = True
    folder: str = ".cache/embeddings"
    namespace: str | None = None
    cache_queries: bool = False

    model_config = SettingsConfigDict(frozen=True, extra='forbid')


class RetrievalSettings(BaseModel):
    """Vector store and retrieval options."""

    vectorstore: VectorStoreType = 'memory'
    k: int = Field(default=4, gt=0)
    collection: str = "documents"
    persist_directory: str | None = None
    query_analysis: bool = False
    validate_context: bool = False
    multi_query: bool = False
    num_queries: int = Field(default=3, ge=1, le=10)

    model_config = SettingsConfigDict(frozen=True, extra='forbid')


class Settings(BaseSettings):
    """
    A pydantic settings object containing the fields with the
    configuration information.

    Settings are saved and read from the configuration file in TOML
    format.

    Attributes:
        embeddings: embedding model
        major: language model for answers and graph extraction
        minor: language model for query rewriting
        aux: language model for validation and output repair
        splitter: text splitting before indexing
        cache: embedding cache
        retrieval: vector store and retrieval
    """

    embeddings: EmbeddingSettings = Field(
        default_factory=lambda: EmbeddingSettings(
            dense_model="OpenAI/text-embedding-3-small"
        ),
        description="Embedding model configuration",
    )
    major: LanguageModelSettings = Field(
        default_factory=lambda: LanguageModelSettings(
            model="OpenAI/gpt-4.1-mini",
        ),
        description="Primary language model for complex reasoning tasks",
    )
    minor: LanguageModelSettings = Field(
        default_factory=lambda: LanguageModelSettings(
            model="OpenAI/gpt-4.1-nano",
        ),
        description="Secondary language model for simple tasks",
    )
    aux: LanguageModelSettings = Field(
        default_factory=lambda: LanguageModelSettings(
            model="OpenAI/gpt-4.1-nano", temperature=0.0
        ),
        description="Auxiliary language model for validation and repair",
    )
    splitter: SplitterSettings = Field(default_factory=SplitterSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    retrieval: RetrievalSettings = Field(
        default_factory=RetrievalSettings
    )

    model_config = SettingsConfigDict(
        toml_file=DEFAULT_CONFIG_FILE,
        env_prefix=ENV_PREFIX,
        frozen=True,
        validate_assignment=True,
        extra='allow',
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the order of settings sources."""
        return (
            init_settings,
            TomlConfigSettingsSource(settings_cls),
            env_settings,
        )

    def __str__(self) -> str:
        return serialize_settings(self)


def _to_toml_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _to_toml_value(v)
            for k, v in value.items()  # type: ignore
            if v is not None
        }
    return value


def serialize_settings(sets: BaseSettings) -> str:
    """Transform the settings into a string in TOML format.

    Args:
        sets: The settings object to serialize

    Returns:
        TOML formatted string representation of settings. Fields
        set to None are omitted, as TOML has no null value.
    """
    import tomlkit

    doc = tomlkit.document()
    doc.add(tomlkit.comment("Configuration file"))
    doc.add(tomlkit.nl())

    data: dict[str, Any] = sets.model_dump()
    for key, value in data.items():
        if isinstance(value, dict):
            tbl = tomlkit.table()
            for kkey, vvalue in value.items():  # type: ignore
                if vvalue is not None:
                    tbl[kkey] = _to_toml_value(vvalue)
            doc[key] = tbl
        elif value is not None:
            doc[key] = value

    return str(tomlkit.dumps(doc))  # type: ignore


def export_settings(
    settings: BaseSettings, file_path: str | Path | None = None
) -> None:
    """Save settings to file in TOML format.

    Args:
        settings: A settings object to save
        file_path: The settings file path (defaults to config.toml)

    Raises:
        OSError: If file cannot be written
    """
    if file_path is None:
        file_path = DEFAULT_CONFIG_FILE
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    with file_path.open("w", encoding="utf-8") as f:
        f.write(serialize_settings(settings))


def create_default_config_file(
    file_path: str | Path | None = None,
) -> None:
    """Create a settings file with default values, replacing any
    existing file.

    Args:
        file_path: Target file path (defaults to config.toml)
    """
    if file_path is None:
        file_path = DEFAULT_CONFIG_FILE
    file_path = Path(file_path)

    if file_path.exists():
        # otherwise, it will be read in
        file_path.unlink()

    export_settings(Settings(), file_path)


def load_settings(file_path: str | Path | None = None) -> Settings:
    """Load settings from TOML file.

    Args:
        file_path: Path to settings file (defaults to config.toml)

    Returns:
        Loaded settings object

    Raises:
        FileNotFoundError: If settings file doesn't exist
        ValueError: If settings file is invalid
    """
    if file_path is None:
        file_path = DEFAULT_CONFIG_FILE
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(
            f"Settings file not found: {file_path}"
        )

    try:

        class FileSettings(Settings):
            model_config = SettingsConfigDict(
                toml_file=str(file_path),
                env_prefix=ENV_PREFIX,
                frozen=True,
                validate_assignment=True,
                extra='allow',
            )

        return FileSettings()
    except Exception as e:
        raise ValueError(
            f"Failed to load settings from {file_path}:\n"
            + format_pydantic_error_message(str(e))
        ) from e


def format_pydantic_error_message(error_message: str) -> str:
    """Filter out verbose lines from pydantic error messages."""
    lines = error_message.split('\n')
    filtered_lines = [
        line
        for line in lines
        if "For further information visit" not in line
    ]
    return '\n'.join(filtered_lines)
