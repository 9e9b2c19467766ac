# stack_engine/graph/service_graph.py
"""Service Graph - dependency DAG over service identifiers."""

from typing import Dict, Iterable, List, Set, Tuple

from stack_engine.core.errors import CycleError, SpecValidationError
from stack_engine.core.models import DeploymentSpec


class ServiceGraph:
    """
    Directed acyclic graph of "depends-on" edges between service ids.

    Nodes are plain identifiers; the graph holds no reference to the
    ServiceSpec objects and is rebuilt for every apply.
    """

    def __init__(self, order: List[str], dependencies: Dict[str, Tuple[str, ...]]):
        self._order = order
        self._position = {sid: i for i, sid in enumerate(order)}
        self._dependencies = dependencies
        self._dependents: Dict[str, List[str]] = {sid: [] for sid in order}
        for sid in order:
            for dep in dependencies[sid]:
                self._dependents[dep].append(sid)

    # -------------------------
    # BUILD
    # -------------------------

    @classmethod
    def build(cls, spec: DeploymentSpec) -> "ServiceGraph":
        """
        Compute a topological order with a depth-first traversal.

        Nodes with no ordering constraint keep their declaration order, so
        an unchanged spec always yields the same order.

        Raises:
            CycleError: Naming every node in the first cycle found
        """
        declared = spec.service_ids()
        index = {sid: i for i, sid in enumerate(declared)}
        dependencies: Dict[str, Tuple[str, ...]] = {}

        missing = []
        for service in spec.services:
            for dep in service.depends_on:
                if dep not in index:
                    missing.append(f"service '{service.service_id}' depends on unknown service '{dep}'")
            dependencies[service.service_id] = tuple(
                sorted(set(service.depends_on), key=lambda d: index.get(d, len(index)))
            )
        if missing:
            raise SpecValidationError(missing)

        order: List[str] = []
        visited: Set[str] = set()
        stack: List[str] = []
        on_stack: Set[str] = set()

        def visit(node: str) -> None:
            if node in on_stack:
                start = stack.index(node)
                raise CycleError(stack[start:] + [node])
            if node in visited:
                return
            stack.append(node)
            on_stack.add(node)
            for dep in dependencies[node]:
                visit(dep)
            stack.pop()
            on_stack.discard(node)
            visited.add(node)
            order.append(node)

        for sid in declared:
            visit(sid)

        return cls(order, dependencies)

    # -------------------------
    # QUERIES
    # -------------------------

    def topological_order(self) -> List[str]:
        return list(self._order)

    def dependencies_of(self, service_id: str) -> Tuple[str, ...]:
        return self._dependencies[service_id]

    def direct_dependents_of(self, service_id: str) -> List[str]:
        return list(self._dependents[service_id])

    def dependents_of(self, service_id: str) -> List[str]:
        """Transitive dependents, in topological order."""
        seen: Set[str] = set()
        pending = list(self._dependents[service_id])
        while pending:
            node = pending.pop()
            if node in seen:
                continue
            seen.add(node)
            pending.extend(self._dependents[node])
        return self.order_of(seen)

    def order_of(self, service_ids: Iterable[str]) -> List[str]:
        """Restrict the topological order to `service_ids`."""
        return sorted(set(service_ids), key=lambda sid: self._position[sid])

    def levels(self) -> List[List[str]]:
        """
        Group nodes by dependency depth.

        Level 0 has no dependencies; every other node sits one level above
        its deepest dependency. Nodes in one level never depend on each other.
        """
        depth: Dict[str, int] = {}
        for sid in self._order:
            deps = self._dependencies[sid]
            depth[sid] = 1 + max(depth[d] for d in deps) if deps else 0

        levels: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for sid in self._order:
            levels[depth[sid]].append(sid)
        return levels

    def __contains__(self, service_id: str) -> bool:
        return service_id in self._position

    def __len__(self) -> int:
        return len(self._order)

    def __repr__(self) -> str:
        return f"<ServiceGraph(order={self._order})>"
