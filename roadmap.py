import logging
import math
from dataclasses import dataclass

import numpy as np

from nav_config import (
    NUM_RANDOM_POINTS,
    POINT_BUFFER,
    PATH_BUFFER,
    PRM_MAX_ATTEMPTS,
    PRM_MAX_SAMPLES_PER_POINT,
    PRM_SEED,
)
from planner import astar


class RoadMapError(Exception):
    """The road map could not be built (not enough free space, anchors never connected)."""


@dataclass
class Node:
    index: int
    map_col: int
    map_row: int
    world_x: float
    world_y: float


class RoadMap:
    """
    Probabilistic road map over an OccupancyGrid.

    Nodes [0, num_anchors) are the anchors in the order given (robot start
    positions, then destinations); random free-space samples follow. Nodes are
    only ever appended, so an index stays valid for the life of the map.
    """

    def __init__(self, grid, anchors, num_points=NUM_RANDOM_POINTS, point_buffer=POINT_BUFFER,
                 path_buffer=PATH_BUFFER, max_samples_per_point=PRM_MAX_SAMPLES_PER_POINT, seed=PRM_SEED):
        self.logger = logging.getLogger("prm.roadmap")
        self.grid = grid
        self.anchors = [(float(x), float(y)) for x, y in anchors]
        self.num_points = num_points
        self.point_buffer = point_buffer
        self.path_buffer = path_buffer
        self.max_samples_per_point = max_samples_per_point
        self.rng = np.random.default_rng(seed)

        self.nodes = []
        self.adj = np.zeros((0, 0), dtype=np.uint8)

    @property
    def num_anchors(self):
        return len(self.anchors)

    def __len__(self):
        return len(self.nodes)

    def node(self, index):
        return self.nodes[index]

    # --- Construction ---
    def build(self, max_attempts=PRM_MAX_ATTEMPTS):
        """Sample and connect the map until every consecutive anchor pair is reachable."""
        for attempt in range(1, max_attempts + 1):
            self._reset()
            self._seed_anchors()
            self._sample_points()
            self.regenerate_edges()
            if self.check_reachability():
                self.logger.info(
                    f"Road map built on attempt {attempt}: {len(self.nodes)} nodes, {self.edge_count()} edges"
                )
                return True
            self.logger.info(f"Anchors not connected on attempt {attempt}/{max_attempts}; resampling")
        raise RoadMapError(f"Anchors still disconnected after {max_attempts} attempts")

    def _reset(self):
        self.nodes = []
        self.adj = np.zeros((0, 0), dtype=np.uint8)

    def _append(self, col, row):
        wx, wy = self.grid.world_of(col, row)
        node = Node(index=len(self.nodes), map_col=int(col), map_row=int(row), world_x=wx, world_y=wy)
        self.nodes.append(node)
        return node

    def _seed_anchors(self):
        for x, y in self.anchors:
            col, row = self.grid.map_of(x, y)
            if not self.grid.is_free(col, row):
                self.logger.warning(f"Anchor ({x:.2f}, {y:.2f}) -> cell ({col}, {row}) is not free")
            self._append(col, row)

    def _sample_points(self):
        max_tries = self.num_points * self.max_samples_per_point
        accepted = 0
        tries = 0
        while accepted < self.num_points:
            if tries >= max_tries:
                raise RoadMapError(
                    f"Only found {accepted}/{self.num_points} free points in {max_tries} samples"
                )
            tries += 1
            col = int(self.rng.integers(0, self.grid.width))
            row = int(self.rng.integers(0, self.grid.height))
            if self.grid.is_free_with_buffer(col, row, self.point_buffer):
                self._append(col, row)
                accepted += 1
        self.logger.debug("Sampled %d free points in %d tries", accepted, tries)

    def regenerate_edges(self):
        """Rebuild the whole adjacency matrix against the current grid."""
        n = len(self.nodes)
        adj = np.zeros((n, n), dtype=np.uint8)
        for i in range(n):
            a = self.nodes[i]
            for j in range(i + 1, n):
                b = self.nodes[j]
                if self.grid.line_clear((a.map_col, a.map_row), (b.map_col, b.map_row), self.path_buffer):
                    adj[i, j] = adj[j, i] = 1
        self.adj = adj
        self.logger.debug("Regenerated edges: %d nodes, %d edges", n, self.edge_count())

    def check_reachability(self):
        for k in range(self.num_anchors - 1):
            if astar(self, k, k + 1) is None:
                self.logger.debug("No path between anchors %d and %d", k, k + 1)
                return False
        return True

    # --- Dynamic insertion ---
    def add_point(self, world_x, world_y):
        """Append a node at a world point. It has no edges until regenerate_edges()."""
        col, row = self.grid.map_of(world_x, world_y)
        node = self._append(col, row)
        self.adj = np.pad(self.adj, ((0, 1), (0, 1)), constant_values=0)
        self.logger.info(f"Added node {node.index} at ({world_x:.2f}, {world_y:.2f}) -> cell ({col}, {row})")
        return node.index

    # --- Graph access ---
    def neighbors(self, index):
        return np.flatnonzero(self.adj[index])

    def distance(self, i, j):
        a, b = self.nodes[i], self.nodes[j]
        return math.hypot(a.map_col - b.map_col, a.map_row - b.map_row)

    def edge_count(self):
        return int(self.adj.sum() // 2)

    def snapshot(self):
        """Read-only view for rendering: nodes, undirected edges and anchor count."""
        edges = np.argwhere(np.triu(self.adj, k=1))
        return {
            'numAnchors': self.num_anchors,
            'nodes': [[n.index, n.map_col, n.map_row, n.world_x, n.world_y] for n in self.nodes],
            'edges': [[int(i), int(j)] for i, j in edges],
        }
