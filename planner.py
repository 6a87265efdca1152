import heapq
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("prm.planner")

# Costs closer than this are ties; the earlier parent is kept
COST_EPSILON = 1e-9


@dataclass(eq=False)
class PlanNode:
    """A* search record. Two records are equal when they refer to the same road map node."""
    node_index: int
    prev: Optional["PlanNode"] = field(default=None, repr=False)
    g: float = 0.0
    f: float = 0.0

    def __eq__(self, other):
        if not isinstance(other, PlanNode):
            return NotImplemented
        return self.node_index == other.node_index

    def __hash__(self):
        return hash(self.node_index)

    def __lt__(self, other):
        return (self.f, self.node_index) < (other.f, other.node_index)


def astar(roadmap, start, goal):
    """
    A* over the road map adjacency with Euclidean pixel distances.

    Returns the goal PlanNode (follow .prev back to start) or None when the
    goal cannot be reached. Ties on f are broken by node index, and a node's
    parent only changes on a strictly cheaper path.
    """
    if start == goal:
        return PlanNode(start)

    def h(i):
        return roadmap.distance(i, goal)

    best = {start: PlanNode(start, None, 0.0, h(start))}
    open_set = [best[start]]
    closed = set()

    while open_set:
        current = heapq.heappop(open_set)
        idx = current.node_index
        if idx in closed or best[idx] is not current:
            continue  # stale heap entry
        if idx == goal:
            return current
        closed.add(idx)

        for nb in roadmap.neighbors(idx):
            nb = int(nb)
            if nb in closed:
                continue
            tmp_g = current.g + roadmap.distance(idx, nb)
            known = best.get(nb)
            if known is None or tmp_g < known.g - COST_EPSILON:
                record = PlanNode(nb, current, tmp_g, tmp_g + h(nb))
                best[nb] = record
                heapq.heappush(open_set, record)

    logger.debug("No path from %d to %d (%d nodes closed)", start, goal, len(closed))
    return None


def path_indices(plan_node):
    """Node indices from start to goal."""
    indices = []
    while plan_node is not None:
        indices.append(plan_node.node_index)
        plan_node = plan_node.prev
    indices.reverse()
    return indices


def to_waypoints(roadmap, plan_node):
    """World (x, y) waypoints from start to goal, taken from the node table."""
    return [(roadmap.node(i).world_x, roadmap.node(i).world_y) for i in path_indices(plan_node)]


def path_cost(roadmap, indices):
    return sum(roadmap.distance(a, b) for a, b in zip(indices, indices[1:]))
