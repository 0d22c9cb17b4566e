"""
Vector stores holding the embedded chunks.

Documents are stored under reproducible ids, computed from their
content and source (or taken from the chunk_id metadata set by the
splitting module). Indexing the same document twice therefore does not
duplicate it.

Main functions:
    create_vectorstore: store from RetrievalSettings
    document_id: the reproducible id of a document
    index_documents: add documents that are not yet in the store
"""

from collections.abc import Sequence

from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings
from langchain_core.vectorstores import VectorStore, InMemoryVectorStore

from lmrecipes.config.config import RetrievalSettings
from lmrecipes.splitting import CHUNK_ID_KEY
from lmrecipes.utils.hash import generate_uuid
from lmrecipes.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)


def create_vectorstore(
    embeddings: Embeddings, settings: RetrievalSettings | None = None
) -> VectorStore:
    """
    Create the vector store specified in the settings.

    Args:
        embeddings: the embedding model used by the store
        settings: retrieval settings. 'memory' creates an in-process
            store; 'chroma' a Chroma collection, persisted if
            persist_directory is set.

    Raises:
        ImportError: if langchain-chroma is required and missing
    """
    if settings is None:
        settings = RetrievalSettings()

    match settings.vectorstore:
        case 'memory':
            return InMemoryVectorStore(embedding=embeddings)
        case 'chroma':
            try:
                from langchain_chroma import Chroma
            except ImportError as e:
                raise ImportError(
                    "The chroma vector store requires the "
                    "'langchain-chroma' package. Install it with: "
                    "pip install langchain-chroma"
                ) from e

            return Chroma(
                collection_name=settings.collection,
                embedding_function=embeddings,
                persist_directory=settings.persist_directory,
            )
        case _:
            raise ValueError(
                "Unreachable code reached: invalid vector store "
                f"{settings.vectorstore}"
            )


def document_id(document: Document) -> str:
    """The reproducible id of a document in the vector store."""
    chunk_id = document.metadata.get(CHUNK_ID_KEY)
    if chunk_id:
        return str(chunk_id)
    source = str(document.metadata.get('source', ""))
    return generate_uuid(source + "\n" + document.page_content)


def _existing_ids(store: VectorStore, ids: list[str]) -> set[str]:
    if not ids:
        return set()
    try:
        found = store.get_by_ids(ids)
    except NotImplementedError:
        return set()
    return {str(d.id) for d in found if d.id is not None}


def index_documents(
    store: VectorStore,
    documents: Sequence[Document],
    logger: LoggerBase = logger,
) -> list[str]:
    """
    Add documents to the vector store, skipping empty documents and
    documents that are already stored.

    Args:
        store: the vector store
        documents: the documents (usually chunks)
        logger: receives a message with the number of documents
            added and skipped

    Returns:
        the ids of the added documents
    """
    new_docs: list[Document] = []
    new_ids: list[str] = []
    empty = 0
    for doc in documents:
        if not doc.page_content.strip():
            empty += 1
            continue
        doc_id = document_id(doc)
        if doc_id in new_ids:
            continue
        new_docs.append(doc)
        new_ids.append(doc_id)

    existing = _existing_ids(store, new_ids)
    pairs = [
        (d, i) for d, i in zip(new_docs, new_ids) if i not in existing
    ]
    if empty:
        logger.warning(f"{empty} empty document(s) not indexed")
    if not pairs:
        logger.info("No new documents to index")
        return []

    added = store.add_documents(
        [d for d, _ in pairs], ids=[i for _, i in pairs]
    )
    logger.info(
        f"Indexed {len(added)} document(s), "
        f"{len(documents) - len(added) - empty} already present"
    )
    return list(added)
