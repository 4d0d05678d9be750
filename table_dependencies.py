"""ClickHouse table dependency graph builder and traversal."""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

logger = logging.getLogger(__name__)

NOT_FOUND = "NOT FOUND"
ZERO_UUID = "00000000-0000-0000-0000-000000000000"
EXTERNAL_ID_PREFIX = "a"

MATERIALIZED_VIEW = "MaterializedView"
VIEW = "View"

LABEL_SINK_TO = "Sink To"
LABEL_PUSH_TO = "Push To"
LABEL_SELECT_FROM = "Select From"
LABEL_LOAD_FROM = "Load From"


class MalformedRecordError(ValueError):
    """Raised when a catalog record violates its shape contract."""


class DuplicateRuleError(ValueError):
    """Raised when an engine type already has a registered rule."""


class NodeKind(Enum):
    INTERNAL = "Internal"
    EXTERNAL = "External"


@dataclass(frozen=True)
class TableRecord:
    """One row of the table catalog."""

    namespace: str
    name: str
    engine: str = ""
    create_query: str = ""
    uuid: str = ZERO_UUID
    dependencies_database: Sequence[str] = ()
    dependencies_table: Sequence[str] = ()
    last_modified: Optional[str] = None
    id: str = ""

    def __post_init__(self) -> None:
        if len(self.dependencies_database) != len(self.dependencies_table):
            raise MalformedRecordError(
                f"{self.namespace}.{self.name}: dependency arrays differ in length "
                f"({len(self.dependencies_database)} != {len(self.dependencies_table)})"
            )
        # frozen dataclass; normalise via object.__setattr__
        object.__setattr__(self, "dependencies_database", tuple(self.dependencies_database))
        object.__setattr__(self, "dependencies_table", tuple(self.dependencies_table))
        if not self.id:
            object.__setattr__(self, "id", internal_node_id(self.namespace, self.name))

    def declared_dependencies(self) -> Iterable[Tuple[str, str]]:
        return zip(self.dependencies_database, self.dependencies_table)


class LabelMode(Enum):
    ABSENT = auto()
    BLANK = auto()
    FORCED = auto()


@dataclass(frozen=True)
class EdgeLabel:
    """Edge label carried by a descriptor: absent, forced blank or forced text."""

    mode: LabelMode
    text: str = ""

    @classmethod
    def forced(cls, text: str) -> "EdgeLabel":
        if not text:
            return BLANK
        return cls(LabelMode.FORCED, text)

    @property
    def is_present(self) -> bool:
        return self.mode != LabelMode.ABSENT


ABSENT = EdgeLabel(LabelMode.ABSENT)
BLANK = EdgeLabel(LabelMode.BLANK)


@dataclass(frozen=True)
class DependencyDescriptor:
    kind: NodeKind
    namespace: str
    name: str
    category: str = ""
    label: EdgeLabel = ABSENT


@dataclass
class GraphNode:
    id: str
    kind: NodeKind
    category: str
    namespace: str
    name: str
    source_text: str
    targets: List[str] = field(default_factory=list)
    last_modified: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.category == "" or self.source_text == NOT_FOUND


@dataclass(frozen=True)
class GraphEdge:
    id: str
    source: str
    target: str
    label: str = ""


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def internal_node_id(namespace: str, name: str) -> str:
    return f"{namespace}.{name}"


def external_node_id(namespace: str, category: str) -> str:
    # Prefixed so the id never parses as a bare hash/number in the renderer.
    digest = hashlib.md5(f"{namespace}@{category}".encode("utf-8")).hexdigest()
    return EXTERNAL_ID_PREFIX + digest


_INNER_PREFIX = ".inner."
_INNER_ID_PREFIX = ".inner_id."


class InnerTableIndex:
    """Hidden tables backing materialized views that have no TO clause.

    Two naming conventions exist: ``.inner.<view-name>`` for views created with
    the all-zero uuid, and ``.inner_id.<view-uuid>`` otherwise. Both are keyed
    by namespace and the full hidden table name.
    """

    def __init__(self) -> None:
        self._tables: Dict[Tuple[str, str], TableRecord] = {}

    @classmethod
    def from_records(cls, records: Iterable[TableRecord]) -> "InnerTableIndex":
        index = cls()
        for record in records:
            if record.name.startswith(_INNER_ID_PREFIX) or record.name.startswith(_INNER_PREFIX):
                index._tables[(record.namespace, record.name)] = record
        return index

    def __len__(self) -> int:
        return len(self._tables)

    @staticmethod
    def inner_name_for(view: TableRecord) -> str:
        if view.uuid == ZERO_UUID:
            return f"{_INNER_PREFIX}{view.name}"
        return f"{_INNER_ID_PREFIX}{view.uuid}"

    def lookup(self, view: TableRecord) -> Optional[TableRecord]:
        return self._tables.get((view.namespace, self.inner_name_for(view)))


# ---------------------------------------------------------------------------
# Engine rules
# ---------------------------------------------------------------------------

EngineRule = Callable[[TableRecord, InnerTableIndex], List[DependencyDescriptor]]

_IDENT = r"(?:`[^`]+`|[A-Za-z0-9_]+)"
_MV_SINK_TO = re.compile(
    rf"^CREATE MATERIALIZED VIEW (?:IF NOT EXISTS )?{_IDENT}(?:\.{_IDENT})? TO ({_IDENT}(?:\.{_IDENT})?)"
)
_DISTRIBUTED = re.compile(r" +Distributed\('[^']+', *'([^']+)', *'([^']+)'")
_MYSQL = re.compile(r" +MySQL\('([^']+)', *'([^']+)', *'([^']+)'")
_BUFFER = re.compile(r" +Buffer\('([^']+)', *'([^']+)'")
_KAFKA_BROKER = re.compile(r"kafka_broker_list *= *'([^']+)'")
_KAFKA_TOPIC = re.compile(r"kafka_topic_list *= *'([^']+)'")
_URL = re.compile(r" +URL\('([^']+)'")
_DICT_SOURCE = "SOURCE(CLICKHOUSE("
_DICT_DB = re.compile(r"DB *'([^']*)'")
_DICT_TABLE = re.compile(r"TABLE *'([^']*)'")


def _strip_backquotes(token: str) -> str:
    if token.startswith("`") and token.endswith("`") and len(token) >= 2:
        return token[1:-1]
    return token


def _split_qualified(token: str) -> Tuple[Optional[str], str]:
    parts: List[str] = []
    buf: List[str] = []
    in_quote = False
    for ch in token:
        if ch == "`":
            in_quote = not in_quote
        if ch == "." and not in_quote:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    parts.append("".join(buf))
    if len(parts) == 1:
        return None, _strip_backquotes(parts[0])
    return _strip_backquotes(parts[0]), _strip_backquotes(parts[1])


def find_sink_target(create_query: str) -> Optional[Tuple[Optional[str], str]]:
    """Return ``(namespace, name)`` of a materialized view's TO clause, if any."""

    match = _MV_SINK_TO.search(create_query)
    if not match:
        return None
    return _split_qualified(match.group(1))


def _mysql_rule(record: TableRecord, _: InnerTableIndex) -> List[DependencyDescriptor]:
    match = _MYSQL.search(record.create_query)
    if not match:
        return []
    server, database, table = match.groups()
    return [
        DependencyDescriptor(
            kind=NodeKind.EXTERNAL,
            category="MySQL Server",
            namespace=server,
            name="",
            label=EdgeLabel.forced(f"[Table]{database}.{table}"),
        )
    ]


def _kafka_rule(record: TableRecord, _: InnerTableIndex) -> List[DependencyDescriptor]:
    broker = _KAFKA_BROKER.search(record.create_query)
    topic = _KAFKA_TOPIC.search(record.create_query)
    if not broker or not topic:
        return []
    first_broker = broker.group(1).split(",")[0].strip()
    return [
        DependencyDescriptor(
            kind=NodeKind.EXTERNAL,
            category="Kafka Server",
            namespace=first_broker,
            name="",
            label=EdgeLabel.forced(f"[Topic]{topic.group(1)}"),
        )
    ]


def _url_rule(record: TableRecord, _: InnerTableIndex) -> List[DependencyDescriptor]:
    match = _URL.search(record.create_query)
    if not match:
        return []
    return [
        DependencyDescriptor(
            kind=NodeKind.EXTERNAL,
            category="HTTP Server",
            namespace=match.group(1),
            name="",
        )
    ]


def _dictionary_rule(record: TableRecord, _: InnerTableIndex) -> List[DependencyDescriptor]:
    index = record.create_query.find(_DICT_SOURCE)
    if index < 0:
        return []
    source = record.create_query[index:]
    database = _DICT_DB.search(source)
    table = _DICT_TABLE.search(source)
    if not database or not table:
        return []
    return [
        DependencyDescriptor(
            kind=NodeKind.INTERNAL,
            namespace=database.group(1),
            name=table.group(1),
            label=EdgeLabel.forced(LABEL_LOAD_FROM),
        )
    ]


def _materialized_view_rule(
    record: TableRecord, inner_tables: InnerTableIndex
) -> List[DependencyDescriptor]:
    sink = find_sink_target(record.create_query)
    if sink is not None:
        namespace, name = sink
        return [
            DependencyDescriptor(
                kind=NodeKind.INTERNAL,
                namespace=namespace if namespace is not None else record.namespace,
                name=name,
                label=EdgeLabel.forced(LABEL_SINK_TO),
            )
        ]
    inner = inner_tables.lookup(record)
    if inner is None:
        logger.debug("no inner table found for materialized view %s", record.id)
        return []
    return [
        DependencyDescriptor(
            kind=NodeKind.INTERNAL,
            namespace=record.namespace,
            name=inner.name,
            label=EdgeLabel.forced(LABEL_SINK_TO),
        )
    ]


def _distributed_rule(record: TableRecord, _: InnerTableIndex) -> List[DependencyDescriptor]:
    match = _DISTRIBUTED.search(record.create_query)
    if not match:
        return []
    # Blank so a Distributed table over a materialized view does not read "Push To".
    return [
        DependencyDescriptor(
            kind=NodeKind.INTERNAL,
            namespace=match.group(1),
            name=match.group(2),
            label=BLANK,
        )
    ]


def _buffer_rule(record: TableRecord, _: InnerTableIndex) -> List[DependencyDescriptor]:
    match = _BUFFER.search(record.create_query)
    if not match:
        return []
    return [
        DependencyDescriptor(
            kind=NodeKind.INTERNAL,
            namespace=match.group(1),
            name=match.group(2),
        )
    ]


class RuleRegistry:
    """Engine type to dependency extraction rule."""

    def __init__(self, rules: Optional[Mapping[str, EngineRule]] = None) -> None:
        self._rules: Dict[str, EngineRule] = {}
        for engine, rule in (rules or {}).items():
            self.register(engine, rule)

    def register(self, engine: str, rule: EngineRule) -> "RuleRegistry":
        if engine in self._rules:
            raise DuplicateRuleError(f"rule already registered for engine {engine!r}")
        self._rules[engine] = rule
        return self

    def get(self, engine: str) -> Optional[EngineRule]:
        return self._rules.get(engine)

    def engines(self) -> List[str]:
        return sorted(self._rules)

    def copy(self) -> "RuleRegistry":
        return RuleRegistry(self._rules)

    def __contains__(self, engine: object) -> bool:
        return engine in self._rules


def _build_default_registry() -> RuleRegistry:
    return RuleRegistry(
        {
            "MySQL": _mysql_rule,
            "Kafka": _kafka_rule,
            "URL": _url_rule,
            "Dictionary": _dictionary_rule,
            MATERIALIZED_VIEW: _materialized_view_rule,
            "Distributed": _distributed_rule,
            "Buffer": _buffer_rule,
        }
    )


# Shared by every build; extend a copy() rather than this instance.
DEFAULT_REGISTRY = _build_default_registry()


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


@dataclass
class BuilderConfig:
    registry: RuleRegistry = field(default_factory=lambda: DEFAULT_REGISTRY)
    deduplicate_edges: bool = False


@dataclass
class DependencyGraph:
    nodes: Dict[str, GraphNode]
    edges: List[GraphEdge]

    def narrow(self, focus_id: str) -> "DependencyGraph":
        nodes, edges = narrow(self.nodes, self.edges, focus_id)
        return DependencyGraph(nodes=nodes, edges=edges)

    def placeholders(self) -> List[GraphNode]:
        return [node for node in self.nodes.values() if node.is_placeholder]


def _new_edge_id() -> str:
    return "e" + uuid.uuid4().hex


def derive_label(source: TableRecord, target_namespace: str, target_name: str) -> str:
    """Label for an internal edge whose descriptor carries no label."""

    if source.engine == MATERIALIZED_VIEW:
        match = _MV_SINK_TO.search(source.create_query)
        if not match:
            return ""
        namespace, name = _split_qualified(match.group(1))
        sink = name if namespace is None else internal_node_id(namespace, name)
        if sink == target_name or sink == internal_node_id(target_namespace, target_name):
            return LABEL_SINK_TO
        return LABEL_SELECT_FROM
    if source.engine == VIEW:
        return LABEL_SELECT_FROM
    return ""


class _GraphBuilder:
    def __init__(self, records: Sequence[TableRecord], cfg: BuilderConfig) -> None:
        self.cfg = cfg
        self.records = records
        self.by_id: Dict[str, TableRecord] = {record.id: record for record in records}
        self.inner_tables = InnerTableIndex.from_records(records)
        self.nodes: Dict[str, GraphNode] = {}
        self.edges: List[GraphEdge] = []
        self._edge_keys: Set[Tuple[str, str, str]] = set()

    def build(self, focus_namespace: str) -> DependencyGraph:
        for record in self.records:
            self.source_node(record)
            for descriptor in self.descriptors_for(record, focus_namespace):
                self.add_dependency(record, descriptor)
        logger.debug(
            "built dependency graph for %r: %d records, %d nodes, %d edges",
            focus_namespace,
            len(self.records),
            len(self.nodes),
            len(self.edges),
        )
        return DependencyGraph(nodes=self.nodes, edges=self.edges)

    def descriptors_for(
        self, record: TableRecord, focus_namespace: str
    ) -> List[DependencyDescriptor]:
        result: List[DependencyDescriptor] = []
        for database, table in record.declared_dependencies():
            if not database or not table:
                continue
            if database != focus_namespace:
                logger.debug(
                    "dropping dependency %s -> %s.%s outside namespace %r",
                    record.id,
                    database,
                    table,
                    focus_namespace,
                )
                continue
            result.append(
                DependencyDescriptor(kind=NodeKind.INTERNAL, namespace=database, name=table)
            )
        rule = self.cfg.registry.get(record.engine)
        if rule is not None:
            extracted = rule(record, self.inner_tables)
            if not extracted:
                logger.debug("engine rule %s matched nothing for %s", record.engine, record.id)
            result.extend(extracted)
        return result

    def source_node(self, record: TableRecord) -> GraphNode:
        node = self.nodes.get(record.id)
        if node is None:
            node = GraphNode(
                id=record.id,
                kind=NodeKind.INTERNAL,
                category=record.engine,
                namespace=record.namespace,
                name=record.name,
                source_text=record.create_query,
                last_modified=record.last_modified,
            )
            self.nodes[record.id] = node
        return node

    def target_node(
        self, descriptor: DependencyDescriptor
    ) -> Tuple[GraphNode, Optional[TableRecord]]:
        if descriptor.kind == NodeKind.INTERNAL:
            node_id = internal_node_id(descriptor.namespace, descriptor.name)
            record = self.by_id.get(node_id)
            node = self.nodes.get(node_id)
            if node is None:
                node = GraphNode(
                    id=node_id,
                    kind=NodeKind.INTERNAL,
                    category=record.engine if record else "",
                    namespace=descriptor.namespace,
                    name=descriptor.name,
                    source_text=record.create_query if record else NOT_FOUND,
                    last_modified=record.last_modified if record else None,
                )
                self.nodes[node_id] = node
            return node, record

        node_id = external_node_id(descriptor.namespace, descriptor.category)
        node = self.nodes.get(node_id)
        if node is None:
            node = GraphNode(
                id=node_id,
                kind=NodeKind.EXTERNAL,
                category=descriptor.category,
                namespace=descriptor.namespace,
                name=descriptor.name,
                source_text="",
            )
            self.nodes[node_id] = node
        return node, None

    def edge_label(
        self,
        source: TableRecord,
        descriptor: DependencyDescriptor,
        target: GraphNode,
        target_record: Optional[TableRecord],
    ) -> str:
        label = descriptor.label
        if descriptor.kind == NodeKind.EXTERNAL:
            if label.is_present:
                return label.text
            return LABEL_SINK_TO if source.engine == MATERIALIZED_VIEW else ""
        if (
            target_record is not None
            and target_record.engine == MATERIALIZED_VIEW
            and not label.is_present
        ):
            return LABEL_PUSH_TO
        if label.is_present:
            return label.text
        return derive_label(source, target.namespace, target.name)

    def add_dependency(self, source: TableRecord, descriptor: DependencyDescriptor) -> None:
        source_node = self.source_node(source)
        target_node, target_record = self.target_node(descriptor)
        label = self.edge_label(source, descriptor, target_node, target_record)
        if self.cfg.deduplicate_edges:
            key = (source_node.id, target_node.id, label)
            if key in self._edge_keys:
                return
            self._edge_keys.add(key)
        self.edges.append(
            GraphEdge(
                id=_new_edge_id(),
                source=source_node.id,
                target=target_node.id,
                label=label,
            )
        )
        source_node.targets.append(target_node.id)


def build_dependency_graph(
    records: Sequence[TableRecord],
    focus_namespace: str,
    config: Optional[BuilderConfig] = None,
) -> DependencyGraph:
    cfg = config or BuilderConfig()
    return _GraphBuilder(list(records), cfg).build(focus_namespace)


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


def _reverse_index(nodes: Mapping[str, GraphNode]) -> Dict[str, List[str]]:
    dependents: Dict[str, List[str]] = {}
    for node in nodes.values():
        for target in node.targets:
            dependents.setdefault(target, []).append(node.id)
    return dependents


def narrow(
    nodes: Mapping[str, GraphNode],
    edges: Sequence[GraphEdge],
    focus_id: str,
) -> Tuple[Dict[str, GraphNode], List[GraphEdge]]:
    """Subgraph of everything ``focus_id`` depends on and everything depending on it.

    The inputs are left untouched; returned nodes are copies.
    """

    # Each direction tracks its own visits so a cycle seen upstream does not
    # cut the downstream walk short.
    upstream: Set[str] = {focus_id}
    stack = [focus_id]
    while stack:
        node = nodes.get(stack.pop())
        if node is None:
            continue
        for target in node.targets:
            if target not in upstream:
                upstream.add(target)
                stack.append(target)

    dependents = _reverse_index(nodes)
    downstream: Set[str] = {focus_id}
    stack = [focus_id]
    while stack:
        for dependent in dependents.get(stack.pop(), ()):
            if dependent not in downstream:
                downstream.add(dependent)
                stack.append(dependent)

    relevant = upstream | downstream

    sub_nodes = {
        node_id: replace(node, targets=list(node.targets))
        for node_id, node in nodes.items()
        if node_id in relevant
    }
    sub_edges = [
        edge for edge in edges if edge.source in relevant and edge.target in relevant
    ]
    if focus_id not in nodes:
        logger.debug("focus %s not present in graph", focus_id)
    return sub_nodes, sub_edges


# ---------------------------------------------------------------------------
# Catalog rows and JSON boundary
# ---------------------------------------------------------------------------

_ROW_KEYS = {
    "create_query": ("tableQuery", "create_table_query", "createQuery"),
    "dependencies_database": ("dependenciesDatabase", "dependencies_database"),
    "dependencies_table": ("dependenciesTable", "dependencies_table"),
    "last_modified": ("metadataModificationTime", "metadata_modification_time"),
}


def _row_value(row: Mapping[str, Any], field_name: str, default: Any = None) -> Any:
    for key in _ROW_KEYS[field_name]:
        if key in row:
            return row[key]
    return default


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    return [str(v) for v in value]


def catalog_query(database: str) -> str:
    """SQL returning the rows ``records_from_rows`` expects for ``database``."""

    quoted = database.replace("\\", "\\\\").replace("'", "\\'")
    return f"""
SELECT
    concat(database, '.', name) AS id,
    uuid,
    database,
    name,
    engine,
    create_table_query AS tableQuery,
    dependencies_database AS dependenciesDatabase,
    dependencies_table AS dependenciesTable,
    metadata_modification_time AS metadataModificationTime
FROM system.tables
WHERE database = '{quoted}' OR has(dependencies_database, '{quoted}')
"""


def records_from_rows(rows: Iterable[Mapping[str, Any]]) -> List[TableRecord]:
    records: List[TableRecord] = []
    for index, row in enumerate(rows):
        database = row.get("database")
        name = row.get("name")
        if not database or not name:
            raise MalformedRecordError(f"row {index}: 'database' and 'name' are required")
        last_modified = _row_value(row, "last_modified")
        records.append(
            TableRecord(
                id=row.get("id") or "",
                uuid=row.get("uuid") or ZERO_UUID,
                namespace=database,
                name=name,
                engine=row.get("engine") or "",
                create_query=_row_value(row, "create_query", "") or "",
                dependencies_database=_as_list(_row_value(row, "dependencies_database")),
                dependencies_table=_as_list(_row_value(row, "dependencies_table")),
                last_modified=str(last_modified) if last_modified is not None else None,
            )
        )
    return records


def _node_to_dict(node: GraphNode) -> Dict[str, Any]:
    return {
        "id": node.id,
        "type": node.kind.value,
        "category": node.category,
        "namespace": node.namespace,
        "name": node.name,
        "query": node.source_text,
        "targets": list(node.targets),
        "metadataModificationTime": node.last_modified,
    }


def _edge_to_dict(edge: GraphEdge) -> Dict[str, Any]:
    return {
        "id": edge.id,
        "source": edge.source,
        "target": edge.target,
        "label": edge.label,
    }


def graph_to_dict(graph: DependencyGraph) -> Dict[str, Any]:
    return {
        "nodes": {node_id: _node_to_dict(node) for node_id, node in graph.nodes.items()},
        "edges": [_edge_to_dict(edge) for edge in graph.edges],
    }
