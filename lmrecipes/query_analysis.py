"""
Query analysis: rewriting and decomposing a user question before
retrieval to improve search relevance.

Two techniques are provided, which may be combined:

- structured analysis: the model returns a Search object with the
    search query, the sub-questions contained in the question, and
    filters on document metadata mentioned in the question (e.g. an
    author or a year).
- multi-query: the model returns alternative phrasings of the
    question, so that documents are retrieved from several
    perspectives.

Documents are then retrieved for each query and merged.

Example:

    ```python
    from lmrecipes.query_analysis import (
        create_query_analyzer,
        expand_queries,
        retrieve_for_queries,
    )

    analyzer = create_query_analyzer()
    search = analyzer.invoke("What did Smith write on RAG in 2023?")
    # Search(query='RAG', sub_queries=[], filters={'author': 'Smith',
    #        'year': 2023})
    queries = expand_queries("What did Smith write on RAG in 2023?",
                             search)
    docs = retrieve_for_queries(retriever, queries, search.filters, k=4)
    ```
"""

from collections.abc import Sequence

from pydantic import BaseModel, Field
from langchain_core.documents import Document
from langchain_core.retrievers import BaseRetriever
from langchain_core.runnables import Runnable, RunnableLambda

from lmrecipes.config.config import Settings, LanguageModelSettings
from lmrecipes.language_models.langchain.runnables import (
    create_runnable,
)
from lmrecipes.output_parsers import (
    LineListOutputParser,
    create_structured_parser,
)
from lmrecipes.vectorstores import document_id

FilterValue = str | int | float | bool


class Search(BaseModel):
    """Search over a database of documents."""

    query: str = Field(
        description="Similarity search query applied to the documents."
    )
    sub_queries: list[str] = Field(
        default_factory=list,
        description="Distinct sub-questions contained in the question, "
        "if any.",
    )
    filters: dict[str, FilterValue] = Field(
        default_factory=dict,
        description="Metadata fields and the values documents must "
        "have, only if explicitly requested.",
    )


def create_query_analyzer(
    settings: LanguageModelSettings | Settings | None = None,
) -> Runnable[str, Search]:
    """
    A runnable taking a question and returning a Search object.

    Args:
        settings: the model settings (defaults to config.toml, minor
            model)

    Raises:
        ValueError, ImportError: see create_runnable
    """
    parser = create_structured_parser(Search)
    kernel = create_runnable("query_analysis", settings)
    instructions = parser.get_format_instructions()

    def _inputs(question: str) -> dict[str, str]:
        return {'question': question, 'format_instructions': instructions}

    chain = RunnableLambda(_inputs) | kernel | parser
    return chain.with_config(run_name="query_analyzer")  # type: ignore


def create_multi_query_generator(
    settings: LanguageModelSettings | Settings | None = None,
    num_queries: int = 3,
) -> Runnable[str, list[str]]:
    """
    A runnable taking a question and returning at most num_queries
    alternative phrasings of it.

    Raises:
        ValueError, ImportError: see create_runnable
    """
    kernel = create_runnable(
        "multi_query", settings, num_queries=num_queries
    )

    def _truncate(queries: list[str]) -> list[str]:
        return queries[:num_queries]

    chain = (
        RunnableLambda(lambda q: {'question': q})
        | kernel
        | LineListOutputParser()
        | RunnableLambda(_truncate)
    )
    return chain.with_config(run_name="multi_query_generator")  # type: ignore


def expand_queries(
    question: str,
    analysis: Search | None = None,
    variants: Sequence[str] | None = None,
) -> list[str]:
    """The queries to run for a question: the question itself, the
    analysed query and sub-queries, and the variants, without blanks
    or repetitions, in this order."""
    queries: list[str] = [question]
    if analysis is not None:
        queries.append(analysis.query)
        queries.extend(analysis.sub_queries)
    if variants:
        queries.extend(variants)
    cleaned = [q.strip() for q in queries if q and q.strip()]
    return list(dict.fromkeys(cleaned))


def _matches(value: object, wanted: FilterValue) -> bool:
    if isinstance(value, (list, tuple, set)):
        return any(_matches(v, wanted) for v in value)  # type: ignore
    if isinstance(wanted, str) and isinstance(value, str):
        return value.strip().lower() == wanted.strip().lower()
    if isinstance(wanted, bool) or isinstance(value, bool):
        return value is wanted
    if isinstance(wanted, (int, float)) and isinstance(value, str):
        return value.strip() == str(wanted)
    return value == wanted


def filter_documents(
    documents: Sequence[Document],
    filters: dict[str, FilterValue] | None,
) -> list[Document]:
    """Keep documents whose metadata match all filters. Strings are
    compared ignoring case; list-valued metadata match if any element
    matches. Documents without the field are dropped."""
    if not filters:
        return list(documents)
    return [
        doc
        for doc in documents
        if all(
            key in doc.metadata and _matches(doc.metadata[key], value)
            for key, value in filters.items()
        )
    ]


def merge_documents(
    results: Sequence[Sequence[Document]],
) -> list[Document]:
    """Union of result lists, without repetitions, in order of first
    appearance."""
    seen: set[str] = set()
    merged: list[Document] = []
    for docs in results:
        for doc in docs:
            key = str(doc.id) if getattr(doc, 'id', None) else document_id(doc)
            if key in seen:
                continue
            seen.add(key)
            merged.append(doc)
    return merged


def retrieve_for_queries(
    retriever: BaseRetriever,
    queries: Sequence[str],
    filters: dict[str, FilterValue] | None = None,
    k: int | None = None,
) -> list[Document]:
    """
    Retrieve documents for each query and merge the results.

    Args:
        retriever: a langchain retriever
        queries: the queries, e.g. from expand_queries
        filters: metadata filters applied to the results
        k: max number of documents returned (all if None)

    Returns:
        the documents, ordered by query and then by rank
    """
    results = [retriever.invoke(q) for q in queries]
    merged = filter_documents(merge_documents(results), filters)
    return merged[:k] if k is not None else merged


async def aretrieve_for_queries(
    retriever: BaseRetriever,
    queries: Sequence[str],
    filters: dict[str, FilterValue] | None = None,
    k: int | None = None,
) -> list[Document]:
    """Asynchronous version of retrieve_for_queries. The queries are
    run as a batch."""
    results = await retriever.abatch(list(queries))
    merged = filter_documents(merge_documents(results), filters)
    return merged[:k] if k is not None else merged
