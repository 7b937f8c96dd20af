import heapq
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from schema_sync.domain.entities.dialect import capabilities_for
from schema_sync.domain.entities.evolution import (
    AddConstraint, AddTable, ChangeType, MigrationPlan, PlannedStatement, SchemaChange,
)
from schema_sync.domain.entities.schema import ConstraintKind, ForeignKey, TableSchema
from schema_sync.domain.exceptions import UnsupportedOperation
from schema_sync.domain.services.migration_builder import MigrationBuilder

logger = logging.getLogger(__name__)

Resource = Tuple[str, ...]

# Tie-break between changes whose relative order the dependency graph leaves open.
PRIORITY = {
    ChangeType.DROP_CONSTRAINT: 1,
    ChangeType.DROP_INDEX: 2,
    ChangeType.RENAME_TABLE: 3,
    ChangeType.RENAME_COLUMN: 4,
    ChangeType.DROP_COLUMN: 5,
    ChangeType.DROP_TABLE: 6,
    ChangeType.ADD_TABLE: 7,
    ChangeType.ADD_COLUMN: 8,
    ChangeType.ALTER_COLUMN_TYPE: 9,
    ChangeType.ALTER_COLUMN_NULLABILITY: 10,
    ChangeType.ADD_INDEX: 11,
    ChangeType.ADD_CONSTRAINT: 12,
}


@dataclass
class _Rebuild:
    """All changes on one table, collapsed into a shadow-table rebuild."""
    table: str
    source: TableSchema
    target: TableSchema
    changes: List[SchemaChange]
    renames: Dict[str, str] = field(default_factory=dict)
    change_type = ChangeType.ALTER_COLUMN_TYPE

    def describe(self) -> str:
        return f"rebuild {self.table} ({'; '.join(c.describe() for c in self.changes)})"


@dataclass
class _Node:
    index: int
    item: object
    deferred: List[ForeignKey] = field(default_factory=list)
    inline_cycle: Set[str] = field(default_factory=set)
    creates: Set[Resource] = field(default_factory=set)
    removes: Set[Resource] = field(default_factory=set)
    requires: Set[Resource] = field(default_factory=set)
    uses: Set[Resource] = field(default_factory=set)

    @property
    def priority(self) -> int:
        return PRIORITY[self.item.change_type]


class MigrationPlanner:
    """
    Orders schema changes into a dialect-correct statement sequence.
    Single Responsibility: dependency ordering and rebuild substitution.
    """

    def __init__(self, builder: MigrationBuilder):
        self._builder = builder
        self._caps = capabilities_for(builder.dialect)

    def plan(self, changes: Sequence[SchemaChange], description: Optional[str] = None) -> MigrationPlan:
        """
        Build the MigrationPlan for ``changes``.

        Raises UnsupportedOperation, without a partial plan, when a change
        cannot be expressed even through a rebuild or when the dependency
        graph keeps a cycle.
        """
        changes = list(changes)
        self._check_not_null_additions(changes)

        items, warnings = self._collapse_rebuilds(changes)
        nodes = [_Node(index=i, item=item) for i, item in enumerate(items)]
        nodes.extend(self._defer_cyclic_foreign_keys(nodes))
        for node in nodes:
            self._describe_resources(node)

        ordered = self._topological_order(nodes)

        statements: List[PlannedStatement] = []
        for node in ordered:
            statements.extend(self._render(node))

        logger.info(
            f"[MigrationPlanner] Planned {len(statements)} statement(s) from {len(changes)} change(s) "
            f"for {self._builder.dialect.value}"
        )
        return MigrationPlan(
            dialect=self._builder.dialect,
            statements=tuple(statements),
            warnings=tuple(warnings),
            description=description or MigrationPlan.description,
        )

    # ------------------------------ validation ------------------------------

    @staticmethod
    def _check_not_null_additions(changes: List[SchemaChange]) -> None:
        offenders = []
        for change in changes:
            if change.change_type is not ChangeType.ADD_COLUMN:
                continue
            column = change.column
            if column.nullable or column.default is not None:
                continue
            row_count = change.source.row_count if change.source is not None else None
            if row_count != 0:
                offenders.append(f"{change.table}.{column.name}")
        if offenders:
            logger.error(f"[MigrationPlanner] NOT NULL columns without default on non-empty tables: {offenders}")
            raise UnsupportedOperation(
                "Cannot add NOT NULL columns without a default to non-empty tables: " + ", ".join(offenders),
                table=offenders[0].split(".")[0],
            )

    # ------------------------------ rebuilds ------------------------------

    def _collapse_rebuilds(self, changes: List[SchemaChange]) -> Tuple[List[object], List[str]]:
        rebuild_tables = {
            c.table for c in changes
            if getattr(c, "source", None) is not None and not self._builder.supports_directly(c)
        }
        if not rebuild_tables:
            return list(changes), []

        items: List[object] = []
        rebuilds: Dict[str, _Rebuild] = {}
        warnings = []
        for change in changes:
            if change.table not in rebuild_tables or getattr(change, "source", None) is None:
                items.append(change)
                continue
            rebuild = rebuilds.get(change.table)
            if rebuild is None:
                rebuild = _Rebuild(table=change.table, source=change.source, target=change.target, changes=[])
                rebuilds[change.table] = rebuild
                items.append(rebuild)
                message = (
                    f"Table '{change.table}' is rebuilt through a shadow copy; "
                    f"it is exclusively locked while rows are copied"
                )
                warnings.append(message)
                logger.warning(f"[MigrationPlanner] {message}")
            rebuild.changes.append(change)
            if change.change_type is ChangeType.RENAME_COLUMN:
                rebuild.renames[change.old_name] = change.new_name
        return items, warnings

    # ------------------------------ FK cycles ------------------------------

    def _defer_cyclic_foreign_keys(self, nodes: List[_Node]) -> List[_Node]:
        """Split foreign keys out of CREATE TABLE where new tables reference each other in a cycle."""
        created = {n.item.table: n for n in nodes if isinstance(n.item, AddTable)}
        graph = {
            name: sorted({fk.referenced_table for fk in n.item.schema.foreign_keys()
                          if fk.referenced_table in created and fk.referenced_table != name})
            for name, n in created.items()
        }
        extra: List[_Node] = []
        for component in self._strongly_connected(graph):
            if len(component) < 2:
                continue
            members = set(component)
            if self._caps.forward_references:
                logger.info(f"[MigrationPlanner] FK cycle {sorted(members)} kept inline (forward references)")
                for name in members:
                    created[name].inline_cycle = members
                continue
            logger.info(f"[MigrationPlanner] Breaking FK cycle {sorted(members)} with deferred constraints")
            for name in sorted(members):
                node = created[name]
                for fk in node.item.schema.foreign_keys():
                    if fk.referenced_table in members and fk.referenced_table != name:
                        node.deferred.append(fk)
                        extra.append(_Node(
                            index=len(nodes) + len(extra),
                            item=AddConstraint(table=name, constraint=fk, target=node.item.schema),
                        ))
        return extra

    @staticmethod
    def _strongly_connected(graph: Dict[str, List[str]]) -> List[List[str]]:
        # Tarjan's algorithm, iterative over sorted vertices for stable output
        index_of: Dict[str, int] = {}
        low: Dict[str, int] = {}
        stack: List[str] = []
        on_stack: Set[str] = set()
        components: List[List[str]] = []
        counter = [0]

        def visit(vertex: str) -> None:
            index_of[vertex] = low[vertex] = counter[0]
            counter[0] += 1
            stack.append(vertex)
            on_stack.add(vertex)
            for successor in graph.get(vertex, []):
                if successor not in index_of:
                    visit(successor)
                    low[vertex] = min(low[vertex], low[successor])
                elif successor in on_stack:
                    low[vertex] = min(low[vertex], index_of[successor])
            if low[vertex] == index_of[vertex]:
                component = []
                while True:
                    top = stack.pop()
                    on_stack.discard(top)
                    component.append(top)
                    if top == vertex:
                        break
                components.append(sorted(component))

        for vertex in sorted(graph):
            if vertex not in index_of:
                visit(vertex)
        return components

    # ------------------------------ graph ------------------------------

    @staticmethod
    def _columns(table: str, columns) -> Set[Resource]:
        return {("column", table, c) for c in columns}

    def _constraint_needs(self, table: str, constraint) -> Set[Resource]:
        needs = {("table", table)}
        if constraint.kind is not ConstraintKind.CHECK:
            needs |= self._columns(table, constraint.columns)
        if constraint.kind is ConstraintKind.FOREIGN_KEY and constraint.referenced_table != table:
            needs.add(("table", constraint.referenced_table))
            needs |= self._columns(constraint.referenced_table, constraint.referenced_columns)
        return needs

    def _describe_resources(self, node: _Node) -> None:
        item = node.item
        kind = item.change_type
        table = item.table

        if isinstance(item, _Rebuild):
            node.requires.add(("table", table))
            node.creates |= self._columns(table, item.target.columns)
            node.creates |= {("index", i.name) for i in item.target.indexes}
            node.removes |= {("index", i.name) for i in item.source.indexes}
            for constraint in item.target.constraints:
                node.requires |= self._constraint_needs(table, constraint) - node.creates
            for fk in item.source.foreign_keys():
                node.uses |= self._constraint_needs(table, fk)
            return

        if kind is ChangeType.ADD_TABLE:
            schema = item.schema
            node.creates.add(("table", table))
            node.creates |= self._columns(table, schema.columns)
            node.creates |= {("constraint", table, c.name) for c in schema.constraints if c.name}
            for fk in schema.foreign_keys():
                if fk in node.deferred or fk.referenced_table in node.inline_cycle:
                    continue
                node.requires |= self._constraint_needs(table, fk) - node.creates
        elif kind is ChangeType.DROP_TABLE:
            node.removes.add(("table", table))
            node.removes |= self._columns(table, item.schema.columns)
            for fk in item.schema.foreign_keys():
                node.uses |= self._constraint_needs(table, fk) - node.removes
        elif kind is ChangeType.RENAME_TABLE:
            node.removes.add(("table", table))
            node.creates.add(("table", item.new_name))
        elif kind is ChangeType.ADD_COLUMN:
            node.requires.add(("table", table))
            node.creates.add(("column", table, item.column.name))
        elif kind is ChangeType.DROP_COLUMN:
            node.uses.add(("table", table))
            node.removes.add(("column", table, item.column.name))
        elif kind is ChangeType.RENAME_COLUMN:
            node.requires.add(("table", table))
            node.removes.add(("column", table, item.old_name))
            node.creates.add(("column", table, item.new_name))
        elif kind is ChangeType.ALTER_COLUMN_TYPE:
            column = ("column", table, item.column.name)
            node.requires.add(("table", table))
            node.removes.add(column)
            node.creates.add(column)
        elif kind is ChangeType.ALTER_COLUMN_NULLABILITY:
            node.requires |= {("table", table), ("column", table, item.column.name)}
        elif kind is ChangeType.ADD_INDEX:
            node.creates.add(("index", item.index.name))
            node.requires |= {("table", table)} | self._columns(table, item.index.columns)
        elif kind is ChangeType.DROP_INDEX:
            node.removes.add(("index", item.index.name))
            node.uses |= {("table", table)} | self._columns(table, item.index.columns)
        elif kind is ChangeType.ADD_CONSTRAINT:
            if item.constraint.name:
                node.creates.add(("constraint", table, item.constraint.name))
            node.requires |= self._constraint_needs(table, item.constraint)
        elif kind is ChangeType.DROP_CONSTRAINT:
            if item.constraint.name:
                node.removes.add(("constraint", table, item.constraint.name))
            node.uses |= self._constraint_needs(table, item.constraint)

    def _topological_order(self, nodes: List[_Node]) -> List[_Node]:
        creators: Dict[Resource, List[_Node]] = {}
        removers: Dict[Resource, List[_Node]] = {}
        for node in nodes:
            for resource in node.creates:
                creators.setdefault(resource, []).append(node)
            for resource in node.removes:
                removers.setdefault(resource, []).append(node)

        edges: Dict[int, Set[int]] = {n.index: set() for n in nodes}

        def link(before: _Node, after: _Node) -> None:
            if before.index != after.index:
                edges[before.index].add(after.index)

        for node in nodes:
            # created before anything that needs it
            for resource in node.requires:
                for creator in creators.get(resource, []):
                    link(creator, node)
            # dependents dropped before what they depend on
            for resource in node.uses:
                for remover in removers.get(resource, []):
                    link(node, remover)
            # a name is dropped before it is reused
            for resource in node.creates:
                for remover in removers.get(resource, []):
                    link(remover, node)

        in_degree = {n.index: 0 for n in nodes}
        for targets in edges.values():
            for target in targets:
                in_degree[target] += 1

        by_index = {n.index: n for n in nodes}
        heap = [(n.priority, n.index) for n in nodes if in_degree[n.index] == 0]
        heapq.heapify(heap)
        ordered: List[_Node] = []
        while heap:
            _, index = heapq.heappop(heap)
            ordered.append(by_index[index])
            for target in sorted(edges[index]):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    heapq.heappush(heap, (by_index[target].priority, target))

        if len(ordered) != len(nodes):
            stuck = sorted(by_index[i].item.describe() for i, d in in_degree.items() if d > 0)
            logger.error(f"[MigrationPlanner] Dependency cycle among: {stuck}")
            raise UnsupportedOperation("Changes form a dependency cycle: " + "; ".join(stuck))
        return ordered

    # ------------------------------ rendering ------------------------------

    def _render(self, node: _Node) -> List[PlannedStatement]:
        item = node.item
        if isinstance(item, _Rebuild):
            return self._builder.rebuild_table(item.source, item.target, item.renames, item.describe())
        if node.deferred:
            return self._builder.create_table_without(item, node.deferred)
        return self._builder.render(item)
