"""
This module centralizes the definition of the prompts that specialize
a chat with a language model to perform a specific function (a
'kernel'). A prompt definition also records which language model of
the configuration (major, minor, aux) should carry out the function.

The predefined prompts are

    - "query_with_context": answer a question from retrieved context
    - "contextualize_question": rewrite a follow-up question as a
        standalone question, given the chat history
    - "multi_query": generate alternative phrasings of a question
    - "query_analysis": extract a search query, sub-queries and
        metadata filters from a question
    - "output_fixer": repair an output that failed to parse
    - "graph_extraction": extract nodes and relationships from text
    - "context_validator": judge if a retrieved text is relevant

These prompts may be retrieved from the module-level dictionary
`prompt_library`.

**Example**:

    ```python
    from lmrecipes.language_models.prompts import prompt_library
    definition = prompt_library["query_with_context"]
    print(definition.prompt)
    ```

Some prompts take parameters that change their text. These prompts
are created by calling `_create_prompts` directly, as the library
only holds the definition with default parameters:

    ```python
    definition = _create_prompts("multi_query", num_queries=5)
    ```

New prompts may be added to the library with `create_prompt`, which
makes them available to `create_runnable` (see
lmrecipes.language_models.langchain.runnables):

    ```python
    from lmrecipes.language_models.prompts import create_prompt
    create_prompt(
        "List the entities named in the text:\\n{text}",
        name="entity_lister",
    )
    lister = create_runnable("entity_lister")
    ```

Prompt texts are f-string templates: literal braces must be doubled.
"""

from typing import Literal
from pydantic import BaseModel, ConfigDict

from .lazy_dict import LazyLoadingDict

ModelTier = Literal['major', 'minor', 'aux']


class PromptDefinition(BaseModel):
    """Groups all properties that uniquely define a kernel prompt"""

    name: str
    prompt: str
    system_prompt: str | None = None
    model_tier: ModelTier = 'minor'

    model_config = ConfigDict(frozen=True, extra='forbid')


PromptNames = Literal[
    "query_with_context",
    "contextualize_question",
    "multi_query",
    "query_analysis",
    "output_fixer",
    "graph_extraction",
    "context_validator",
]

DEFAULT_NUM_QUERIES = 3


def _format_allowed(label: str, values: object) -> str:
    match values:
        case None | []:
            return ""
        case str():
            items = [values]
        case list() | tuple():
            items = [str(v) for v in values]  # type: ignore
        case _:
            raise ValueError(f"Invalid {label} parameter: {values}")
    unique = list(dict.fromkeys(items))
    return f"Allowed {label}: " + ", ".join(unique) + "\n"


def _create_prompts(
    prompt_name: PromptNames, **kwargs: object
) -> PromptDefinition:
    match prompt_name:
        case "query_with_context":
            return PromptDefinition(
                name=prompt_name,
                prompt="""
Use the following pieces of retrieved CONTEXT to answer the QUESTION.
If the context does not contain the answer, say that you don't know.
Cite the sources by their number in square brackets.
----
CONTEXT:
{context}

----
QUESTION: {question}

----
ANSWER:
""",
                system_prompt="You are an assistant for question-answering tasks.",
                model_tier='major',
            )
        case "contextualize_question":
            return PromptDefinition(
                name=prompt_name,
                prompt="""
Given the CHAT HISTORY and the latest user QUESTION, which might
reference context in the chat history, formulate a standalone question
that can be understood without the chat history. Do NOT answer the
question, only reformulate it if needed and otherwise return it as is.
----
CHAT HISTORY:
{chat_history}

----
QUESTION: {question}

----
STANDALONE QUESTION:
""",
            )
        case "multi_query":
            num_queries = kwargs.pop('num_queries', DEFAULT_NUM_QUERIES)
            if not isinstance(num_queries, int) or num_queries < 1:
                raise ValueError(
                    "multi_query: num_queries must be a positive "
                    f"integer, got {num_queries}"
                )
            return PromptDefinition(
                name=prompt_name,
                prompt=f"""
Generate {num_queries} different versions of the given user QUESTION
to retrieve relevant documents from a vector database. By generating
multiple perspectives on the question, help the user overcome the
limitations of distance-based similarity search. Provide the
alternative questions separated by newlines, without numbering.
----
QUESTION: {{question}}
""",
            )
        case "query_analysis":
            return PromptDefinition(
                name=prompt_name,
                prompt="""
You convert user questions into database queries. Given a QUESTION,
return the search query that best retrieves relevant documents. If the
question contains distinct sub-questions, list them as sub_queries.
If the question mentions constraints on document attributes (such as
author, year or source), return them as filters. Do not add filters
that the user did not ask for.

{format_instructions}
----
QUESTION: {question}
""",
                system_prompt="You are an expert at converting user questions into database queries.",
            )
        case "output_fixer":
            return PromptDefinition(
                name=prompt_name,
                prompt="""
INSTRUCTIONS:
----
{instructions}
----
COMPLETION:
----
{completion}
----

The completion above did not satisfy the constraints given in the
instructions. The error was:
----
{error}
----

Please try again. Respond only with an answer that satisfies the
constraints laid out in the instructions:
""",
                model_tier='aux',
            )
        case "graph_extraction":
            allowed = _format_allowed(
                "node types", kwargs.pop('allowed_nodes', None)
            ) + _format_allowed(
                "relationship types",
                kwargs.pop('allowed_relationships', None),
            )
            return PromptDefinition(
                name=prompt_name,
                prompt="""
Extract a knowledge graph from the TEXT. Nodes are entities (people,
organizations, places, concepts); use the most complete name of the
entity as node id, and a general type such as Person or Organization.
Relationships connect two node ids with a general, timeless type such
as WORKS_AT rather than BECAME_PROFESSOR_AT. Do not add information
that is not in the text.
"""
                + allowed.replace('{', '{{').replace('}', '}}')
                + """
{format_instructions}
----
TEXT:
{text}
""",
                system_prompt="You are a top-tier algorithm designed for extracting information in structured formats to build a knowledge graph.",
                model_tier='major',
            )
        case "context_validator":
            return PromptDefinition(
                name=prompt_name,
                prompt="""
Your task is to evaluate if the CONTEXT is relevant to the QUESTION.
Answer YES if the context is relevant, otherwise NO.
----
QUESTION: {question}

----
CONTEXT: {context}

----
ANSWER:
""",
                model_tier='aux',
            )
        case _:  # do not remove this
            raise ValueError(f"Invalid prompt: {prompt_name}")


# the library of prompt definitions
prompt_library: LazyLoadingDict[PromptNames | str, PromptDefinition] = (
    LazyLoadingDict(_create_prompts)  # type: ignore
)


def create_prompt(
    prompt: str,
    name: str,
    *,
    system_prompt: str | None = None,
    model_tier: ModelTier = 'minor',
) -> None:
    """
    Adds a custom prompt template to the prompt library.

    Args:
        prompt: the prompt text (f-string template).
        name: the name of the prompt. This also names the kernel
            created from it by create_runnable.
        system_prompt: an optional system prompt text.
        model_tier: the configured model that runs the kernel.

    Raises:
        ValueError: if a prompt with this name already exists.
    """
    if name in PromptNames.__args__:
        raise ValueError(f"'{name}' is a predefined prompt")
    definition = PromptDefinition(
        name=name,
        prompt=prompt,
        system_prompt=system_prompt,
        model_tier=model_tier,
    )
    prompt_library[name] = definition
