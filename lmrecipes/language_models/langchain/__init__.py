""" LangChain interface to language models

This package connects specifications written in config.toml to the
LangChain objects that carry out the recipes of the library. The
connection takes place through configuration objects, based on the
Pydantic Settings library, that may be created in code or left empty
to be loaded from config.toml.

There are two layers of abstraction:

- model objects (models.py): they wrap calling and receiving messages
    to and from the language model, and computing embeddings.
- runnables (runnables.py): a prompt from the prompt library combined
    with a model and a string output parser. These objects may be
    chained together and are called with .invoke/.ainvoke/.stream.
"""
# pyright: reportUnusedImport=false
# flake8: noqa

from .models import (
    create_model_from_spec,
    create_model_from_settings,
    create_embedding_model_from_spec,
    create_embedding_model_from_settings,
)
from .runnables import (
    RunnableType,
    create_runnable,
    create_embeddings,
    create_kernel_from_objects,
)
