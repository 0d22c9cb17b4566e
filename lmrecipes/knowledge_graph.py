"""
Knowledge graph extraction: a language model reads a text and returns
the entities (nodes) and relations (relationships) it mentions. The
graph documents extracted from several texts are merged into a
KnowledgeGraph, which may be queried in memory or exported as Cypher
statements for a graph database.

Example:

    ```python
    from langchain_core.documents import Document
    from lmrecipes.knowledge_graph import (
        KnowledgeGraph,
        create_graph_extractor,
        extract_graph,
    )

    allowed_nodes = ["Person", "Organization"]
    allowed_relationships = ["WORKS_AT"]
    extractor = create_graph_extractor(
        None, allowed_nodes, allowed_relationships
    )
    doc = Document(page_content="Marie Curie worked at the Sorbonne.")
    graph_doc = extract_graph(
        doc, extractor, allowed_nodes, allowed_relationships
    )

    graph = KnowledgeGraph()
    graph.add_graph_documents([graph_doc])
    print(graph.triples())
    # [('Marie Curie', 'WORKS_AT', 'Sorbonne')]
    ```

Node ids have the first letter of each word capitalized, node types
are capitalized, and relationship types are written in UPPER_SNAKE_CASE,
so that the same entity extracted from different texts maps to the
same node.
"""

import re
from collections.abc import Sequence

from pydantic import BaseModel, Field
from langchain_core.documents import Document
from langchain_core.exceptions import OutputParserException
from langchain_core.runnables import Runnable, RunnableLambda

from lmrecipes.config.config import Settings, LanguageModelSettings
from lmrecipes.language_models.langchain.runnables import (
    create_runnable,
)
from lmrecipes.output_parsers import create_structured_parser
from lmrecipes.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)

PropertyValue = str | int | float | bool


class Node(BaseModel):
    id: str
    type: str = "Node"
    properties: dict[str, PropertyValue] = Field(default_factory=dict)


class Relationship(BaseModel):
    source: str
    target: str
    type: str
    properties: dict[str, PropertyValue] = Field(default_factory=dict)


class GraphDocument(BaseModel):
    """The nodes and relationships extracted from a source document."""

    nodes: list[Node] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    source: Document | None = None


# schema of the model reply
class _ExtractedNode(BaseModel):
    id: str = Field(description="Name or human-readable identifier.")
    type: str = Field(description="Type of the entity, e.g. Person.")


class _ExtractedRelationship(BaseModel):
    source: str = Field(description="Id of the source node.")
    source_type: str = Field(description="Type of the source node.")
    target: str = Field(description="Id of the target node.")
    target_type: str = Field(description="Type of the target node.")
    type: str = Field(description="Type of the relationship.")


class _Extraction(BaseModel):
    """Entities and relations mentioned in a text."""

    nodes: list[_ExtractedNode] = Field(default_factory=list)
    relationships: list[_ExtractedRelationship] = Field(
        default_factory=list
    )


# normalization ------------------------------------------------------
def normalize_node_id(node_id: str) -> str:
    """'  marie   curie ' -> 'Marie Curie'. Only the first letter of
    each word is changed: 'iPhone' -> 'IPhone', 'NASA' stays."""
    return " ".join(w[:1].upper() + w[1:] for w in node_id.split())


def normalize_node_type(node_type: str) -> str:
    """'research institute' -> 'ResearchInstitute'"""
    words = re.split(r"[\s_\-]+", node_type.strip())
    return "".join(w[:1].upper() + w[1:] for w in words if w)


def normalize_relationship_type(rel_type: str) -> str:
    """'works at', 'worksAt' -> 'WORKS_AT'"""
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", rel_type.strip())
    return re.sub(r"[^0-9A-Za-z]+", "_", text).strip("_").upper()


def _is_allowed(value: str, allowed: set[str]) -> bool:
    return not allowed or value.lower() in allowed


def create_graph_extractor(
    settings: LanguageModelSettings | Settings | None = None,
    allowed_nodes: Sequence[str] = (),
    allowed_relationships: Sequence[str] = (),
) -> Runnable[str, str]:
    """
    A runnable taking a text and returning the reply of the model,
    a JSON object with the nodes and relationships.

    Args:
        settings: the model settings (defaults to config.toml, major
            model)
        allowed_nodes: node types the model may use (any if empty)
        allowed_relationships: relationship types the model may use
            (any if empty)

    Raises:
        ValueError, ImportError: see create_runnable
    """
    instructions = create_structured_parser(
        _Extraction
    ).get_format_instructions()
    kernel = create_runnable(
        "graph_extraction",
        settings,
        allowed_nodes=list(allowed_nodes),
        allowed_relationships=list(allowed_relationships),
    )

    def _inputs(text: str) -> dict[str, str]:
        return {'text': text, 'format_instructions': instructions}

    chain = RunnableLambda(_inputs) | kernel
    return chain.with_config(run_name="graph_extractor")  # type: ignore


def parse_extraction(
    reply: str,
    allowed_nodes: Sequence[str] = (),
    allowed_relationships: Sequence[str] = (),
    source: Document | None = None,
) -> GraphDocument:
    """
    Convert the reply of the graph extractor into a graph document.
    Ids and types are normalized; nodes and relationships of types
    not allowed are dropped, and so are relationships whose nodes
    were dropped. Nodes mentioned only in relationships are added; an
    endpoint already among the nodes keeps the type given there.

    Raises:
        OutputParserException: if the reply cannot be parsed
    """
    extraction: _Extraction = create_structured_parser(
        _Extraction
    ).parse(reply)
    node_types = {normalize_node_type(t).lower() for t in allowed_nodes}
    rel_types = {
        normalize_relationship_type(t).lower()
        for t in allowed_relationships
    }

    nodes: dict[str, Node] = {}

    def _add_node(node_id: str, node_type: str) -> str | None:
        key = normalize_node_id(node_id)
        if key in nodes:
            # the type of an accepted node is kept
            return key
        ntype = normalize_node_type(node_type) or "Node"
        if not key or not _is_allowed(ntype, node_types):
            return None
        nodes[key] = Node(id=key, type=ntype)
        return key

    for node in extraction.nodes:
        _add_node(node.id, node.type)

    relationships: dict[tuple[str, str, str], Relationship] = {}
    for rel in extraction.relationships:
        rtype = normalize_relationship_type(rel.type)
        if not rtype or not _is_allowed(rtype, rel_types):
            continue
        source_id = _add_node(rel.source, rel.source_type)
        target_id = _add_node(rel.target, rel.target_type)
        if source_id is None or target_id is None:
            continue
        relationships.setdefault(
            (source_id, rtype, target_id),
            Relationship(source=source_id, target=target_id, type=rtype),
        )

    return GraphDocument(
        nodes=list(nodes.values()),
        relationships=list(relationships.values()),
        source=source,
    )


def extract_graph(
    document: Document | str,
    extractor: Runnable[str, str],
    allowed_nodes: Sequence[str] = (),
    allowed_relationships: Sequence[str] = (),
    *,
    logger: LoggerBase = logger,
) -> GraphDocument:
    """
    Extract a graph document from a document.

    Args:
        document: a langchain document or a text
        extractor: from create_graph_extractor
        allowed_nodes, allowed_relationships: as in
            create_graph_extractor. The model reply is filtered by
            these types.
        logger: receives an error if the reply cannot be parsed

    Returns:
        a graph document, empty if the reply could not be parsed
    """
    if isinstance(document, str):
        document = Document(page_content=document)
    reply = extractor.invoke(document.page_content)
    try:
        return parse_extraction(
            reply, allowed_nodes, allowed_relationships, document
        )
    except OutputParserException as e:
        logger.error(f"Could not extract graph from document: {e}")
        return GraphDocument(source=document)


def _cypher_string(value: PropertyValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _cypher_label(label: str) -> str:
    return "`" + label.replace("`", "``") + "`"


def _cypher_properties(
    variable: str, properties: dict[str, PropertyValue]
) -> str:
    if not properties:
        return ""
    items = ", ".join(
        f"{variable}.{_cypher_label(k)} = {_cypher_string(v)}"
        for k, v in sorted(properties.items())
    )
    return " SET " + items


class KnowledgeGraph:
    """An in-memory graph merged from graph documents."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._relationships: dict[tuple[str, str, str], Relationship] = {}

    def add_node(self, node: Node) -> None:
        """Add a node; if a node with the same id exists, its
        properties are updated."""
        existing = self._nodes.get(node.id)
        if existing is None:
            self._nodes[node.id] = node.model_copy(deep=True)
        else:
            existing.properties.update(node.properties)

    def add_relationship(self, relationship: Relationship) -> None:
        """Add a relationship, adding its nodes if missing."""
        for node_id in (relationship.source, relationship.target):
            if node_id not in self._nodes:
                self._nodes[node_id] = Node(id=node_id)
        key = (
            relationship.source,
            relationship.type,
            relationship.target,
        )
        existing = self._relationships.get(key)
        if existing is None:
            self._relationships[key] = relationship.model_copy(deep=True)
        else:
            existing.properties.update(relationship.properties)

    def add_graph_documents(
        self, documents: Sequence[GraphDocument]
    ) -> None:
        for doc in documents:
            for node in doc.nodes:
                self.add_node(node)
            for rel in doc.relationships:
                self.add_relationship(rel)

    def nodes(self, node_type: str | None = None) -> list[Node]:
        return [
            n
            for n in self._nodes.values()
            if node_type is None or n.type == node_type
        ]

    def relationships(self) -> list[Relationship]:
        return list(self._relationships.values())

    def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(normalize_node_id(node_id))

    def neighbors(
        self, node_id: str, relationship_type: str | None = None
    ) -> list[Node]:
        """The nodes connected to node_id, in either direction."""
        key = normalize_node_id(node_id)
        rtype = (
            normalize_relationship_type(relationship_type)
            if relationship_type
            else None
        )
        found: dict[str, Node] = {}
        for (source, kind, target) in self._relationships:
            if rtype is not None and kind != rtype:
                continue
            if source == key:
                found.setdefault(target, self._nodes[target])
            elif target == key:
                found.setdefault(source, self._nodes[source])
        return list(found.values())

    def triples(self) -> list[tuple[str, str, str]]:
        """The relationships as (source, type, target) tuples."""
        return list(self._relationships.keys())

    def to_cypher(self) -> list[str]:
        """MERGE statements creating the graph in a Cypher database
        such as Neo4j."""
        statements: list[str] = []
        for node in self._nodes.values():
            statements.append(
                f"MERGE (n:{_cypher_label(node.type)} "
                f"{{id: {_cypher_string(node.id)}}})"
                + _cypher_properties("n", node.properties)
            )
        for rel in self._relationships.values():
            source = self._nodes[rel.source]
            target = self._nodes[rel.target]
            statements.append(
                f"MATCH (a:{_cypher_label(source.type)} "
                f"{{id: {_cypher_string(source.id)}}}), "
                f"(b:{_cypher_label(target.type)} "
                f"{{id: {_cypher_string(target.id)}}}) "
                f"MERGE (a)-[r:{_cypher_label(rel.type)}]->(b)"
                + _cypher_properties("r", rel.properties)
            )
        return statements

    def __len__(self) -> int:
        return len(self._nodes)
