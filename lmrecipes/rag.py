"""
Retrieval-augmented generation (RAG): documents are split, embedded
and indexed in a vector store; questions are answered by a language
model from the documents retrieved for them.

The module offers two levels of abstraction.

- create_rag_chain: a plain LangChain chain, retriever | prompt |
    model, taking {'question': ...} and returning the answer text.
- RagPipeline: ingestion and question answering configured from
    config.toml, with optional query analysis, multi-query retrieval,
    validation of the retrieved context, and chat history.

Example:

    ```python
    from lmrecipes.rag import RagPipeline

    pipeline = RagPipeline.from_settings()   # reads config.toml
    pipeline.ingest(["LangChain is a framework for developing "
                     "applications powered by language models."])
    answer = pipeline.ask("What is LangChain?")
    print(answer.answer)
    for doc in answer.sources:
        print(doc.metadata)

    # follow-up question, rewritten using the history
    from langchain_core.messages import HumanMessage, AIMessage
    history = [HumanMessage("What is LangChain?"),
               AIMessage(answer.answer)]
    answer = pipeline.ask("What is it used for?", history=history)
    ```
"""

from collections.abc import AsyncIterator, Iterator, Sequence
from operator import itemgetter

from pydantic import BaseModel, ConfigDict, Field
from langchain_core.documents import Document
from langchain_core.exceptions import OutputParserException
from langchain_core.messages import BaseMessage, get_buffer_string
from langchain_core.retrievers import BaseRetriever
from langchain_core.runnables import Runnable, RunnableLambda
from langchain_core.vectorstores import VectorStore
from langchain_text_splitters import TextSplitter

from lmrecipes.config.config import Settings, LanguageModelSettings
from lmrecipes.embeddings_cache import CachedEmbeddings
from lmrecipes.language_models.langchain.runnables import (
    RunnableType,
    create_embeddings,
    create_runnable,
)
from lmrecipes.output_parsers import YesNoOutputParser
from lmrecipes.query_analysis import (
    Search,
    aretrieve_for_queries,
    create_multi_query_generator,
    create_query_analyzer,
    expand_queries,
    retrieve_for_queries,
)
from lmrecipes.splitting import create_text_splitter, split_documents
from lmrecipes.vectorstores import create_vectorstore, index_documents
from lmrecipes.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)

NO_CONTEXT = "No relevant context was found."


def format_documents(documents: Sequence[Document]) -> str:
    """Format retrieved documents for the prompt, numbering them so
    that the model can cite them.

    Example:
        [1] (guide.md) LangChain is a framework...

        [2] LCEL composes runnables...
    """
    blocks: list[str] = []
    for index, doc in enumerate(documents, start=1):
        source = doc.metadata.get('source')
        prefix = f"[{index}] ({source}) " if source else f"[{index}] "
        blocks.append(prefix + doc.page_content.strip())
    return "\n\n".join(blocks)


def create_rag_chain(
    retriever: BaseRetriever,
    settings: LanguageModelSettings | Settings | None = None,
) -> Runnable[dict[str, str], str]:
    """
    A chain answering {'question': ...} from the documents found by
    the retriever.

    Args:
        retriever: a langchain retriever, e.g. vectorstore.as_retriever()
        settings: settings of the answering model (defaults to
            config.toml, major model)
    """
    kernel = create_runnable("query_with_context", settings)
    chain = {
        'context': itemgetter('question')
        | retriever
        | RunnableLambda(format_documents),
        'question': itemgetter('question'),
    } | kernel
    return chain.with_config(run_name="rag_chain")  # type: ignore


class RagAnswer(BaseModel):
    """The answer to a question, with the documents it is based on.

    Attributes:
        question: the question as asked
        standalone_question: the question rewritten using the chat
            history (equal to question without history)
        answer: the answer of the model
        sources: the retrieved documents given to the model
        queries: the queries used for retrieval
    """

    question: str
    standalone_question: str
    answer: str
    sources: list[Document] = Field(default_factory=list)
    queries: list[str] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RagPipeline:
    """
    Ingestion and question answering over a vector store.

    Args:
        vectorstore: the vector store holding the chunks
        answer_kernel: runnable taking 'context' and 'question'
        text_splitter: splits documents at ingestion (no splitting
            if None)
        k: number of documents given to the model
        query_analyzer: optional runnable question -> Search
        multi_query: optional runnable question -> list of variants
        contextualizer: runnable taking 'chat_history' and 'question'
            and returning a standalone question. Required to use
            chat history.
        context_validator: optional runnable taking 'question' and
            'context' and returning YES or NO; documents judged
            irrelevant are not given to the model.
        logger: receives warnings and errors
    """

    def __init__(
        self,
        vectorstore: VectorStore,
        answer_kernel: RunnableType,
        *,
        text_splitter: TextSplitter | None = None,
        k: int = 4,
        query_analyzer: Runnable[str, Search] | None = None,
        multi_query: Runnable[str, list[str]] | None = None,
        contextualizer: RunnableType | None = None,
        context_validator: RunnableType | None = None,
        logger: LoggerBase = logger,
    ) -> None:
        if k < 1:
            raise ValueError("k must be a positive integer")
        self.vectorstore = vectorstore
        self.answer_kernel = answer_kernel
        self.text_splitter = text_splitter
        self.k = k
        self.query_analyzer = query_analyzer
        self.multi_query = multi_query
        self.contextualizer = contextualizer
        self.context_validator = context_validator
        self.logger = logger
        self.retriever: BaseRetriever = vectorstore.as_retriever(
            search_kwargs={'k': k}
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        logger: LoggerBase = logger,
    ) -> 'RagPipeline':
        """Build a pipeline as specified by the settings (read from
        config.toml if None).

        Raises:
            ValidationError, ValueError: for invalid settings
            ImportError: for missing provider packages
        """
        if settings is None:
            settings = Settings()

        embeddings = CachedEmbeddings.from_settings(
            create_embeddings(settings.embeddings),
            settings.cache,
            settings.embeddings.dense_model,
        )
        retrieval = settings.retrieval
        return cls(
            create_vectorstore(embeddings, retrieval),
            create_runnable("query_with_context", settings),
            text_splitter=create_text_splitter(settings.splitter),
            k=retrieval.k,
            query_analyzer=(
                create_query_analyzer(settings)
                if retrieval.query_analysis
                else None
            ),
            multi_query=(
                create_multi_query_generator(
                    settings, retrieval.num_queries
                )
                if retrieval.multi_query
                else None
            ),
            contextualizer=create_runnable(
                "contextualize_question", settings
            ),
            context_validator=(
                create_runnable("context_validator", settings)
                if retrieval.validate_context
                else None
            ),
            logger=logger,
        )

    # ingestion --------------------------------------------------
    def ingest(
        self,
        documents: Sequence[Document | str],
        metadata: dict[str, object] | None = None,
    ) -> list[str]:
        """
        Split and index documents. Documents already indexed are
        skipped.

        Args:
            documents: langchain documents or plain texts
            metadata: added to the metadata of all documents

        Returns:
            the ids of the chunks added to the vector store
        """
        docs: list[Document] = []
        for doc in documents:
            if isinstance(doc, str):
                doc = Document(page_content=doc)
            if metadata:
                doc = Document(
                    id=doc.id,
                    page_content=doc.page_content,
                    metadata={**metadata, **doc.metadata},
                )
            docs.append(doc)

        if self.text_splitter is not None:
            docs = split_documents(docs, self.text_splitter)
        return index_documents(self.vectorstore, docs, self.logger)

    # retrieval --------------------------------------------------
    def _analyze(self, question: str) -> Search | None:
        if self.query_analyzer is None:
            return None
        try:
            return self.query_analyzer.invoke(question)
        except OutputParserException as e:
            self.logger.warning(f"Query analysis failed: {e}")
            return None

    def _variants(self, question: str) -> list[str]:
        if self.multi_query is None:
            return []
        return self.multi_query.invoke(question)

    def _validate(
        self, question: str, documents: list[Document]
    ) -> list[Document]:
        if self.context_validator is None or not documents:
            return documents
        parser = YesNoOutputParser()
        kept: list[Document] = []
        for doc in documents:
            reply = self.context_validator.invoke(
                {'question': question, 'context': doc.page_content}
            )
            try:
                relevant = parser.parse(reply)
            except OutputParserException:
                self.logger.warning(
                    f"Unclear context validation reply: {reply!r}"
                )
                relevant = True
            if relevant:
                kept.append(doc)
        return kept

    def retrieve(self, question: str) -> tuple[list[str], list[Document]]:
        """
        Retrieve the documents for a question.

        Returns:
            the queries run against the vector store, and the
            documents retrieved (at most k)
        """
        analysis = self._analyze(question)
        queries = expand_queries(
            question, analysis, self._variants(question)
        )
        documents = retrieve_for_queries(
            self.retriever,
            queries,
            analysis.filters if analysis else None,
            self.k,
        )
        return queries, self._validate(question, documents)

    # question answering -----------------------------------------
    def _check(self, question: str) -> str:
        question = question.strip()
        if not question:
            raise ValueError("Empty question")
        return question

    def contextualize(
        self, question: str, history: Sequence[BaseMessage] | None
    ) -> str:
        """The question rewritten as a standalone question using the
        chat history. Without history, the question is returned."""
        if not history:
            return question
        if self.contextualizer is None:
            self.logger.warning(
                "Chat history ignored: no contextualizer configured"
            )
            return question
        standalone = self.contextualizer.invoke(
            {
                'chat_history': get_buffer_string(list(history)),
                'question': question,
            }
        ).strip()
        return standalone or question

    async def _acontextualize(
        self, question: str, history: Sequence[BaseMessage] | None
    ) -> str:
        if not history or self.contextualizer is None:
            return self.contextualize(question, history)
        standalone = await self.contextualizer.ainvoke(
            {
                'chat_history': get_buffer_string(list(history)),
                'question': question,
            }
        )
        return standalone.strip() or question

    def _context(self, documents: list[Document]) -> str:
        if not documents:
            self.logger.warning("No documents retrieved for question")
            return NO_CONTEXT
        return format_documents(documents)

    def ask(
        self,
        question: str,
        history: Sequence[BaseMessage] | None = None,
    ) -> RagAnswer:
        """
        Answer a question from the indexed documents.

        Args:
            question: the user question
            history: the previous messages of the conversation

        Raises:
            ValueError: for an empty question
        """
        question = self._check(question)
        standalone = self.contextualize(question, history)
        queries, documents = self.retrieve(standalone)
        answer = self.answer_kernel.invoke(
            {'context': self._context(documents), 'question': standalone}
        )
        return RagAnswer(
            question=question,
            standalone_question=standalone,
            answer=answer,
            sources=documents,
            queries=queries,
        )

    def stream(
        self,
        question: str,
        history: Sequence[BaseMessage] | None = None,
    ) -> Iterator[str]:
        """Answer a question, yielding the answer as it is generated.

        Raises:
            ValueError: for an empty question
        """
        question = self._check(question)
        standalone = self.contextualize(question, history)
        _, documents = self.retrieve(standalone)
        yield from self.answer_kernel.stream(
            {'context': self._context(documents), 'question': standalone}
        )

    async def aask(
        self,
        question: str,
        history: Sequence[BaseMessage] | None = None,
    ) -> RagAnswer:
        """Asynchronous version of ask. Query analysis, multi-query
        and context validation are not run by this method."""
        question = self._check(question)
        standalone = await self._acontextualize(question, history)
        queries = [standalone]
        documents = await aretrieve_for_queries(
            self.retriever, queries, None, self.k
        )
        answer = await self.answer_kernel.ainvoke(
            {'context': self._context(documents), 'question': standalone}
        )
        return RagAnswer(
            question=question,
            standalone_question=standalone,
            answer=answer,
            sources=documents,
            queries=queries,
        )

    async def astream(
        self,
        question: str,
        history: Sequence[BaseMessage] | None = None,
    ) -> AsyncIterator[str]:
        """Asynchronous version of stream, with the limitations of
        aask."""
        question = self._check(question)
        standalone = await self._acontextualize(question, history)
        documents = await aretrieve_for_queries(
            self.retriever, [standalone], None, self.k
        )
        async for chunk in self.answer_kernel.astream(
            {'context': self._context(documents), 'question': standalone}
        ):
            yield chunk
