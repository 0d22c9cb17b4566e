"""
Output parsers turning the text of a language model reply into Python
objects.

Main classes:
    LineListOutputParser: one item per line, list markers removed
    YesNoOutputParser: YES/NO replies into booleans

Main functions:
    create_structured_parser: a parser into a pydantic model
    parse_json_output: JSON, possibly in a markdown code fence
    parse_with_fix: parse, asking a language model to repair the
        output on failure

All parsers raise langchain_core.exceptions.OutputParserException on
failure, so that they can be used in LangChain chains.

Example:

    ```python
    from pydantic import BaseModel
    from lmrecipes.output_parsers import (
        create_structured_parser,
        parse_with_fix,
    )

    class Person(BaseModel):
        name: str
        age: int

    parser = create_structured_parser(Person)
    person = parse_with_fix(parser, reply_text)  # uses aux model to fix
    ```
"""

import re
from typing import Any, TypeVar

from pydantic import BaseModel
from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import (
    BaseOutputParser,
    PydanticOutputParser,
)
from langchain_core.runnables import Runnable
from langchain_core.utils.json import parse_json_markdown

from lmrecipes.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)

ModelT = TypeVar('ModelT', bound=BaseModel)
T = TypeVar('T')

# "-", "*", "+", "1.", "1)", "(1)"
_LIST_MARKER = re.compile(r"^\s*(?:[-*+•]|\(?\d+[.)])\s+")


class LineListOutputParser(BaseOutputParser[list[str]]):
    """Splits the reply into lines. Empty lines and list markers are
    removed, and repeated lines are kept once in order of first
    appearance."""

    def parse(self, text: str) -> list[str]:
        lines: list[str] = []
        for line in text.splitlines():
            item = _LIST_MARKER.sub("", line).strip()
            if item:
                lines.append(item)
        return list(dict.fromkeys(lines))

    def get_format_instructions(self) -> str:
        return "Write one item per line, without numbering."

    @property
    def _type(self) -> str:
        return "line_list"


class YesNoOutputParser(BaseOutputParser[bool]):
    """Maps a reply starting with YES or NO (any case, with trailing
    punctuation) to True or False."""

    def parse(self, text: str) -> bool:
        match = re.match(r"^\W*(yes|no)\b", text.strip(), re.IGNORECASE)
        if match is None:
            raise OutputParserException(
                f"Expected YES or NO, got: {text!r}",
                llm_output=text,
            )
        return match.group(1).lower() == "yes"

    def get_format_instructions(self) -> str:
        return "Answer YES or NO."

    @property
    def _type(self) -> str:
        return "yes_no"


def create_structured_parser(
    schema: type[ModelT],
) -> PydanticOutputParser:
    """A parser of JSON replies into instances of a pydantic model.
    Its get_format_instructions() text, containing the JSON schema,
    is meant to be included in the prompt."""
    return PydanticOutputParser(pydantic_object=schema)


def format_instructions(schema: type[BaseModel]) -> str:
    return create_structured_parser(schema).get_format_instructions()


def parse_json_output(text: str) -> Any:
    """Parse JSON from a reply, also when enclosed in a markdown code
    fence.

    Raises:
        OutputParserException: if no valid JSON is found
    """
    try:
        return parse_json_markdown(text)
    except Exception as e:
        raise OutputParserException(
            f"Invalid JSON output: {e}", llm_output=text
        ) from e


def _instructions(parser: BaseOutputParser[Any]) -> str:
    try:
        return parser.get_format_instructions()
    except NotImplementedError:
        return ""


def parse_with_fix(
    parser: BaseOutputParser[T],
    text: str,
    fixer: Runnable[dict[str, str], str] | None = None,
    *,
    max_retries: int = 1,
    logger: LoggerBase = logger,
) -> T:
    """
    Parse text, and if parsing fails, ask a language model to fix
    the text and parse again.

    Args:
        parser: the output parser
        text: the text to parse
        fixer: a runnable taking 'instructions', 'completion' and
            'error', and returning the repaired text. Defaults to
            the 'output_fixer' kernel created from config.toml.
        max_retries: max number of repair attempts
        logger: receives a warning for each failed attempt

    Returns:
        the parsed object

    Raises:
        OutputParserException: the last parsing error, if all repair
            attempts fail
    """
    try:
        return parser.parse(text)
    except OutputParserException as e:
        error = e

    if fixer is None:
        from lmrecipes.language_models.langchain.runnables import (
            create_runnable,
        )

        fixer = create_runnable("output_fixer")

    completion = text
    for attempt in range(max_retries):
        logger.warning(
            f"Output could not be parsed (attempt {attempt + 1} of "
            f"{max_retries}): {error}"
        )
        completion = fixer.invoke(
            {
                'instructions': _instructions(parser),
                'completion': completion,
                'error': repr(error),
            }
        )
        try:
            return parser.parse(completion)
        except OutputParserException as e:
            error = e

    raise error
