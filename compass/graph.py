"""Causal graph between BSC objectives.

Rebuilt from the current objectives and links on every call; never cached
across requests.  Traversal is breadth-first with a visited set, so a cycle
the user drew (A -> B -> A) is walked once and reported, not followed.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from compass.errors import CycleDetectedWarning, NotFoundError

log = logging.getLogger(__name__)

FORWARD = "forward"
BACKWARD = "backward"
DIRECTIONS = (FORWARD, BACKWARD)


@dataclass(frozen=True)
class ObjectiveNode:
    id: int
    name: str
    perspective: str = ""


@dataclass(frozen=True)
class LinkEdge:
    from_id: int
    to_id: int
    id: int | None = None


@dataclass(frozen=True)
class Reachability:
    ids: tuple[int, ...]
    cycles: tuple[CycleDetectedWarning, ...] = ()

    @property
    def truncated(self) -> bool:
        return bool(self.cycles)


@dataclass
class CausalGraph:
    nodes: dict[int, ObjectiveNode] = field(default_factory=dict)
    forward: dict[int, list[int]] = field(default_factory=dict)
    backward: dict[int, list[int]] = field(default_factory=dict)

    def __contains__(self, objective_id: object) -> bool:
        return objective_id in self.nodes

    def neighbours(self, objective_id: int, direction: str = FORWARD) -> list[int]:
        adjacency = self.forward if direction == FORWARD else self.backward
        return adjacency.get(objective_id, [])

    def reachable_from(self, objective_id: int, direction: str = FORWARD) -> Reachability:
        """Objective ids reachable from *objective_id*, start node first, BFS order."""
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}")
        if objective_id not in self.nodes:
            raise NotFoundError("Objective", objective_id)
        return self.reachable_from_many([objective_id], direction)

    def reachable_from_many(self, start_ids: Iterable[int], direction: str = FORWARD) -> Reachability:
        """Union of reachability from several start nodes, deduplicated, in BFS order.

        Unknown start ids are ignored.  Every back edge inside the reachable
        set is reported as a cycle, including loops between sibling branches.
        """
        order: list[int] = []
        visited: set[int] = set()
        queue: deque[int] = deque()

        for start in start_ids:
            if start in self.nodes and start not in visited:
                visited.add(start)
                order.append(start)
                queue.append(start)
        roots = list(order)

        while queue:
            current = queue.popleft()
            for nxt in self.neighbours(current, direction):
                if nxt in visited:
                    continue
                visited.add(nxt)
                order.append(nxt)
                queue.append(nxt)

        cycles: list[CycleDetectedWarning] = []
        for path, child in self._back_edges(roots, direction):
            warning = CycleDetectedWarning(from_id=path[-1], to_id=child)
            cycles.append(warning)
            log.warning("Traversal truncated at %s", warning.describe())
        return Reachability(ids=tuple(order), cycles=tuple(cycles))

    def _back_edges(self, roots: Iterable[int], direction: str = FORWARD) -> Iterator[tuple[list[int], int]]:
        """Depth-first walk yielding (stack path, re-entered node) for each back edge."""
        state: dict[int, int] = {}  # 1 = on stack, 2 = done
        for root in roots:
            if root in state:
                continue
            stack: list[tuple[int, int]] = [(root, 0)]
            path: list[int] = []
            while stack:
                node, idx = stack.pop()
                if idx == 0:
                    state[node] = 1
                    path.append(node)
                children = self.neighbours(node, direction)
                if idx < len(children):
                    stack.append((node, idx + 1))
                    child = children[idx]
                    if state.get(child) == 1:
                        yield list(path), child
                    elif child not in state:
                        stack.append((child, 0))
                else:
                    state[node] = 2
                    path.pop()

    def find_cycles(self) -> list[list[int]]:
        """Every cycle closed by a back edge, as the node list from re-entry point onwards."""
        return [path[path.index(child):] for path, child in self._back_edges(self.nodes)]


def build_graph(objectives: Iterable[ObjectiveNode], links: Iterable[LinkEdge]) -> CausalGraph:
    graph = CausalGraph()
    for obj in objectives:
        graph.nodes[obj.id] = obj
        graph.forward.setdefault(obj.id, [])
        graph.backward.setdefault(obj.id, [])

    for link in links:
        if link.from_id == link.to_id:
            log.warning("Skipping self-loop causal link %s on objective %s", link.id, link.from_id)
            continue
        if link.from_id not in graph.nodes or link.to_id not in graph.nodes:
            log.warning("Skipping causal link %s: unknown objective (%s -> %s)", link.id, link.from_id, link.to_id)
            continue
        if link.to_id not in graph.forward[link.from_id]:
            graph.forward[link.from_id].append(link.to_id)
            graph.backward[link.to_id].append(link.from_id)
    return graph
