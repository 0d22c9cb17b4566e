"""
Iterators producing the messages returned by the fake chat models of
the Debug provider. The iterators are infinite, so that a fake model
can be invoked any number of times.
"""

from collections.abc import Iterator
from itertools import cycle


class MessageIterator:
    """
    Generates sequential messages with a customizable prefix,
    following the pattern "{prefix} {counter}" with counter starting
    at 1.
    """

    def __init__(self, prefix: str = "Message") -> None:
        self.prefix = prefix
        self.counter = 1

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        message = f"{self.prefix} {self.counter}"
        self.counter += 1
        return message


class ConstantMessageIterator:
    """Generates the message with which it was initialized, counting
    how many times it was asked for it."""

    def __init__(self, message: str = "Message") -> None:
        self.message = message
        self.counter = 0

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        self.counter += 1
        return self.message


def yield_message(prefix: str = "Message") -> MessageIterator:
    """
    Create an iterator of sequential messages.

    Example:
        >>> iterator = yield_message("Alert")
        >>> next(iterator)
        'Alert 1'
        >>> next(iterator)
        'Alert 2'
    """
    return MessageIterator(prefix)


def yield_constant_message(
    message: str = "Message",
) -> ConstantMessageIterator:
    """
    Create an iterator that repeats the same message.

    Example:
        >>> iterator = yield_constant_message("Alert")
        >>> next(iterator)
        'Alert'
        >>> next(iterator)
        'Alert'
    """
    return ConstantMessageIterator(message)


def yield_messages(messages: list[str]) -> Iterator[str]:
    """Cycle through a list of messages. Used to script the replies of
    a fake model across the steps of a chain.

    Raises:
        ValueError: if the list is empty
    """
    if not messages:
        raise ValueError("yield_messages: empty message list")
    return cycle(list(messages))
