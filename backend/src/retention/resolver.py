"""Dependency graph resolver for cascading deletes.

Turns the declared entity manifest into an ordered plan for one user: every
kind appears after all kinds that reference it, the root (user) last. The
order is a deterministic topological sort (ties broken by manifest order),
so the same manifest always yields the same plan.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from sqlalchemy import MetaData

from .exceptions import ManifestError
from .manifest import ENTITY_MANIFEST, ROOT_KIND, EntityKind
from .policy import Disposition, RetentionPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selector:
    """Rows of a kind whose `column` is one of `values`."""
    column: str
    values: Tuple

    @property
    def is_empty(self) -> bool:
        return len(self.values) == 0

    def to_dict(self) -> Dict:
        return {"column": self.column, "values": [str(v) for v in self.values]}


@dataclass(frozen=True)
class ResolvedStep:
    kind: EntityKind
    selector: Selector
    disposition: Disposition


class DependencyGraphResolver:
    """Orders manifest kinds and builds per-user deletion plans."""

    def __init__(
        self,
        policy: RetentionPolicy,
        manifest: Sequence[EntityKind] = ENTITY_MANIFEST,
    ):
        self.policy = policy
        self.kinds: Dict[str, EntityKind] = {}
        for kind in manifest:
            if kind.name in self.kinds:
                raise ManifestError(f"Duplicate kind in manifest: {kind.name}")
            self.kinds[kind.name] = kind
        self._index = {name: i for i, name in enumerate(self.kinds)}
        self.edges = self._build_edges()
        self.order = self._topological_order()

    def _build_edges(self) -> Dict[str, Set[str]]:
        """kind -> kinds it references (which must be removed after it)."""
        roots = [k.name for k in self.kinds.values() if k.is_root]
        if roots != [ROOT_KIND]:
            raise ManifestError(f"Manifest must have exactly one root '{ROOT_KIND}', got {roots}")

        edges: Dict[str, Set[str]] = {name: set() for name in self.kinds}
        for kind in self.kinds.values():
            targets = list(kind.references)
            if kind.owner is not None:
                targets.append(kind.owner.parent)
            for target in targets:
                if target not in self.kinds:
                    raise ManifestError(f"Kind '{kind.name}' references unknown kind '{target}'")
                edges[kind.name].add(target)
        return edges

    def _topological_order(self) -> List[str]:
        # Kahn's algorithm; in-degree counts kinds that still reference a node
        referenced_by: Dict[str, int] = {name: 0 for name in self.kinds}
        for targets in self.edges.values():
            for target in targets:
                referenced_by[target] += 1

        ready = [(self._index[n], n) for n, count in referenced_by.items() if count == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            order.append(name)
            for target in self.edges[name]:
                referenced_by[target] -= 1
                if referenced_by[target] == 0:
                    heapq.heappush(ready, (self._index[target], target))

        if len(order) != len(self.kinds):
            cyclic = sorted(n for n, count in referenced_by.items() if count > 0)
            raise ManifestError(f"Dependency cycle in manifest involving: {', '.join(cyclic)}")
        return order

    def dependents(self, name: str) -> List[str]:
        """Kinds that reference `name`, in deletion order."""
        return [n for n in self.order if name in self.edges[n]]

    def kind(self, name: str) -> EntityKind:
        try:
            return self.kinds[name]
        except KeyError:
            raise ManifestError(f"Unknown kind: {name}")

    def verify_against_metadata(self, metadata: MetaData) -> None:
        """Fail if the schema holds a foreign key the manifest does not declare.

        A missing edge would let the engine delete a parent before its
        children, so the drift is reported at startup instead.
        """
        by_table = {kind.table.name: kind for kind in self.kinds.values()}
        problems = []
        for table_name, kind in by_table.items():
            table = metadata.tables.get(table_name)
            if table is None:
                problems.append(f"table '{table_name}' for kind '{kind.name}' is missing")
                continue
            for fk in table.foreign_keys:
                target = by_table.get(fk.column.table.name)
                if target is None or target.name == kind.name:
                    continue
                if target.name not in self.edges[kind.name]:
                    problems.append(
                        f"{table_name}.{fk.parent.name} -> {fk.column.table.name} "
                        f"is not declared for kind '{kind.name}'"
                    )
        if problems:
            raise ManifestError("Manifest does not match schema: " + "; ".join(problems))

    def resolve(self, store, user_id: UUID) -> List[ResolvedStep]:
        """Build the ordered deletion plan for one user.

        Returns an empty list when the user does not exist. Selector values
        are read once, parents first, so each child selector holds the key
        values of the parent rows that will be removed.
        """
        root = self.kinds[ROOT_KIND]
        root_ids = store.select_values(root, "id", Selector("id", (user_id,)))
        if not root_ids:
            return []

        selectors: Dict[str, Selector] = {ROOT_KIND: Selector("id", tuple(root_ids))}
        key_cache: Dict[Tuple[str, str], Tuple] = {(ROOT_KIND, "id"): tuple(root_ids)}

        # Parents first: reverse of the deletion order
        for name in reversed(self.order):
            kind = self.kinds[name]
            if kind.is_root:
                continue
            link = kind.owner
            cache_key = (link.parent, link.parent_column)
            if cache_key not in key_cache:
                parent = self.kinds[link.parent]
                key_cache[cache_key] = tuple(
                    store.select_values(parent, link.parent_column, selectors[link.parent])
                )
            selectors[name] = Selector(link.column, key_cache[cache_key])

        steps = [
            ResolvedStep(
                kind=self.kinds[name],
                selector=selectors[name],
                disposition=self.policy.disposition_for(name),
            )
            for name in self.order
        ]
        logger.debug(
            f"Resolved {len(steps)} deletion steps for user {user_id}",
            extra={"user_id": str(user_id)},
        )
        return steps

    def selectors_from_record(self, recorded: Optional[Dict]) -> Dict[str, Selector]:
        """Rebuild selectors stored in an account_deleted ledger entry."""
        selectors = {}
        for name, data in (recorded or {}).items():
            if name in self.kinds:
                selectors[name] = Selector(data["column"], tuple(data["values"]))
        return selectors
