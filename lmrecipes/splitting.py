"""Splits documents into chunks prior to embedding.

This implementation uses langchain text splitters. Chunks inherit the
metadata of the document they come from, and receive the metadata
fields

    chunk_index: position of the chunk in the document (from 0)
    chunk_count: number of chunks of the document
    parent_id: id of the source document
    chunk_id: id of the chunk, unique and reproducible

The parent_id is the 'id' metadata field of the source document, if
present, or a UUID computed from its text.

Main classes:
    NullTextSplitter: a splitter that does not split

Main functions:
    create_text_splitter: splitter from SplitterSettings
    split_documents: split documents adding chunk metadata
    split_markdown: split markdown by headings, then by size
"""

from collections.abc import Sequence

from langchain_core.documents import Document
from langchain_text_splitters import (
    TextSplitter,
    CharacterTextSplitter,
    RecursiveCharacterTextSplitter,
    MarkdownHeaderTextSplitter,
    Language,
)

from lmrecipes.config.config import SplitterSettings
from lmrecipes.utils.hash import generate_uuid

PARENT_ID_KEY = "parent_id"
CHUNK_ID_KEY = "chunk_id"
CHUNK_INDEX_KEY = "chunk_index"
CHUNK_COUNT_KEY = "chunk_count"

DEFAULT_HEADERS: list[tuple[str, str]] = [
    ("#", "h1"),
    ("##", "h2"),
    ("###", "h3"),
]


class NullTextSplitter(TextSplitter):
    """A langchain text splitter that does not split"""

    def split_text(self, text: str) -> list[str]:
        return [text]


def create_text_splitter(
    settings: SplitterSettings | None = None,
) -> TextSplitter:
    """A text splitter as specified by the settings (defaults to a
    recursive character splitter, chunk size 1000, overlap 200)."""
    if settings is None:
        settings = SplitterSettings()

    match settings.splitter:
        case 'recursive':
            return RecursiveCharacterTextSplitter(
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                add_start_index=settings.add_start_index,
            )
        case 'character':
            return CharacterTextSplitter(
                separator="\n\n",
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                add_start_index=settings.add_start_index,
            )
        case 'markdown':
            return RecursiveCharacterTextSplitter.from_language(
                Language.MARKDOWN,
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                add_start_index=settings.add_start_index,
            )
        case 'null':
            return NullTextSplitter()
        case _:
            raise ValueError(
                f"Unreachable code reached: invalid splitter "
                f"{settings.splitter}"
            )


def document_parent_id(document: Document) -> str:
    """The id of a source document: its 'id' metadata field, the id
    attribute of the Document, or a UUID of its content and source."""
    meta_id = document.metadata.get('id')
    if meta_id:
        return str(meta_id)
    if getattr(document, 'id', None):
        return str(document.id)
    source = str(document.metadata.get('source', ""))
    return generate_uuid(source + "\n" + document.page_content)


def split_documents(
    documents: Sequence[Document], text_splitter: TextSplitter
) -> list[Document]:
    """Split documents into chunks carrying the document metadata and
    the chunk metadata fields. Documents with no text are dropped.

    Args:
        documents: a list of langchain documents
        text_splitter: a langchain text splitter

    Returns:
        a list of langchain documents, one per chunk
    """
    chunks: list[Document] = []
    for doc in documents:
        if not doc.page_content.strip():
            continue
        parent_id = document_parent_id(doc)
        splits = text_splitter.split_documents([doc])
        for index, split in enumerate(splits):
            metadata = dict(split.metadata)
            metadata.pop('id', None)
            metadata[PARENT_ID_KEY] = parent_id
            metadata[CHUNK_INDEX_KEY] = index
            metadata[CHUNK_COUNT_KEY] = len(splits)
            metadata[CHUNK_ID_KEY] = generate_uuid(
                f"{parent_id}:{index}:{split.page_content}"
            )
            chunks.append(
                Document(page_content=split.page_content, metadata=metadata)
            )
    return chunks


def split_markdown(
    text: str,
    text_splitter: TextSplitter | None = None,
    headers: list[tuple[str, str]] | None = None,
    metadata: dict[str, object] | None = None,
) -> list[Document]:
    """Split markdown text into sections at headings, recording the
    headings in the metadata, and then split sections that are too
    long with the text splitter.

    Args:
        text: markdown text
        text_splitter: splitter applied to each section (defaults to
            a recursive character splitter)
        headers: pairs of heading marker and metadata key, such as
            ("##", "h2"). Defaults to levels 1 to 3.
        metadata: metadata added to all chunks (e.g. 'source')

    Returns:
        a list of langchain documents with chunk metadata
    """
    header_splitter = MarkdownHeaderTextSplitter(
        headers_to_split_on=headers or DEFAULT_HEADERS,
        strip_headers=False,
    )
    sections: list[Document] = header_splitter.split_text(text)
    base = dict(metadata or {})
    doc_id = str(base.pop('id', None) or generate_uuid(text))
    # each section is the parent of its chunks
    for index, section in enumerate(sections):
        section.metadata = {
            **base,
            **section.metadata,
            'id': f"{doc_id}#{index}",
        }

    if text_splitter is None:
        text_splitter = create_text_splitter()
    return split_documents(sections, text_splitter)
