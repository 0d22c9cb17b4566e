"""
The utility class `LazyLoadingDict` stores memoized objects produced
by a factory function. It is used to hold the chat models, embedding
models, prompt definitions and runnables of the package, so that
objects with the same definition are created only once.

The key of the dictionary is the definition of the object (for
example, a frozen pydantic LanguageModelSettings); the factory
function receives the key and returns the object. Invalid definitions
produce errors at creation time, raised by pydantic when the key is
built or by the factory function when it does not recognize the key.
"""

from collections.abc import Callable
from typing import TypeVar

# ValueT is the parameter for the stored valued, KeyT for the keys.
ValueT = TypeVar('ValueT')
KeyT = TypeVar('KeyT')


class LazyLoadingDict(dict[KeyT, ValueT]):
    """A lazy dictionary of memoized objects of type ValueT.

    Example:
    ```python
    from pydantic import BaseModel, ConfigDict

    class EmbeddingSpec(BaseModel):
        dense_model: str
        model_config = ConfigDict(frozen=True)  # hashable keys

    def _create_embedding(spec: EmbeddingSpec) -> Embeddings:
        match spec.dense_model:
            case "Debug/fake":
                return DeterministicFakeEmbedding(size=16)
            case _:
                raise ValueError(f"Invalid model: {spec.dense_model}")

    embeddings = LazyLoadingDict(_create_embedding)
    encoder = embeddings[EmbeddingSpec(dense_model="Debug/fake")]
    # same object returned, factory not called again
    assert encoder is embeddings[EmbeddingSpec(dense_model="Debug/fake")]
    ```

    Values may also be assigned directly, bypassing the factory. A key
    that is already present cannot be reassigned without deleting it
    first. When values are deleted, the destructor function given in
    the constructor is called on them; if none was given, their
    `close` or `dispose` method is called, if they have one.

    Expected behaviour: may raise ValidationError and ValueErrors.
    """

    def __init__(
        self,
        key_creator_func: Callable[[KeyT], ValueT],
        destructor_func: Callable[[ValueT], None] | None = None,
    ):
        super().__init__()
        self._key_creator_func = key_creator_func
        self._destructor_func = destructor_func

    def _destroy_value(self, value: ValueT) -> None:
        if self._destructor_func:
            self._destructor_func(value)
        elif callable(getattr(value, "close", None)):
            value.close()  # type: ignore (checked)
        elif callable(getattr(value, "dispose", None)):
            value.dispose()  # type: ignore (checked)

    def __getitem__(self, key: KeyT) -> ValueT:
        if key in self:
            return super().__getitem__(key)

        value: ValueT = self._key_creator_func(key)
        super().__setitem__(key, value)
        return value

    def __setitem__(self, key: KeyT, value: ValueT) -> None:
        """Set a value directly, bypassing the factory function.

        Raises:
            ValueError: If the key already exists in the dictionary.
        """
        if key in self:
            raise ValueError(
                f"Key '{key}' already exists. Delete it first to overwrite."
            )
        super().__setitem__(key, value)

    def __delitem__(self, key: KeyT) -> None:
        if key in self:
            self._destroy_value(super().__getitem__(key))
        super().__delitem__(key)

    def clear(self) -> None:
        for value in list(self.values()):
            self._destroy_value(value)
        super().clear()
