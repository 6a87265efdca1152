"""
test_roadmap.py: PRM construction, reachability retries, dynamic insertion and
edge regeneration.
"""

import unittest

import numpy as np

from occupancy_grid import OccupancyGrid
from planner import astar, path_indices
from roadmap import Node, RoadMap, RoadMapError


def make_grid(width=10, height=10, mpp=1.0):
    return OccupancyGrid(np.ones((height, width), dtype=np.uint8), meters_per_pixel=mpp)


def anchors_at(grid, *cells):
    """World coordinates of the given (col, row) cells."""
    return [grid.world_of(c, r) for c, r in cells]


def obstacle_grid():
    """40x30 grid with a border wall and a block in the middle, open above and below it."""
    grid = make_grid(40, 30)
    grid.cells[0, :] = 0
    grid.cells[-1, :] = 0
    grid.cells[:, 0] = 0
    grid.cells[:, -1] = 0
    grid.cells[8:22, 18:22] = 0
    return grid


class TestScenarioPRMSanity(unittest.TestCase):

    def setUp(self):
        self.grid = make_grid()
        self.roadmap = RoadMap(
            self.grid, anchors_at(self.grid, (2, 2), (8, 8)), num_points=3, path_buffer=1, seed=11,
        )
        self.roadmap.build(max_attempts=3)

    def test_anchors_first(self):
        self.assertEqual(len(self.roadmap), 5)
        self.assertEqual((self.roadmap.node(0).map_col, self.roadmap.node(0).map_row), (2, 2))
        self.assertEqual((self.roadmap.node(1).map_col, self.roadmap.node(1).map_row), (8, 8))

    def test_anchor_edge(self):
        self.assertEqual(self.roadmap.adj[0, 1], 1)

    def test_direct_path(self):
        self.assertEqual(path_indices(astar(self.roadmap, 0, 1)), [0, 1])


class TestScenarioBlockedCorridor(unittest.TestCase):

    def setUp(self):
        self.grid = make_grid()
        self.grid.cells[:, 5] = 0
        self.roadmap = RoadMap(
            self.grid, anchors_at(self.grid, (2, 5), (8, 5)),
            num_points=3, point_buffer=1, path_buffer=0, seed=5,
        )

    def test_wall_cuts_every_path(self):
        self.roadmap._seed_anchors()
        self.roadmap._sample_points()
        self.roadmap.regenerate_edges()
        self.assertEqual(self.roadmap.adj[0, 1], 0)
        self.assertIsNone(astar(self.roadmap, 0, 1))
        self.assertFalse(self.roadmap.check_reachability())

    def test_build_gives_up(self):
        with self.assertRaises(RoadMapError):
            self.roadmap.build(max_attempts=2)


class TestInvariants(unittest.TestCase):

    def setUp(self):
        self.grid = obstacle_grid()
        anchors = anchors_at(self.grid, (5, 15), (34, 15), (10, 4))
        self.roadmap = RoadMap(self.grid, anchors, num_points=25, point_buffer=2, path_buffer=1, seed=2)
        self.roadmap.build(max_attempts=20)

    def test_random_nodes_have_free_buffer(self):
        for node in self.roadmap.nodes[self.roadmap.num_anchors:]:
            square = self.grid.cells[node.map_row - 2:node.map_row + 3, node.map_col - 2:node.map_col + 3]
            self.assertTrue(square.all(), node)

    def test_adjacency_symmetric_zero_diagonal(self):
        adj = self.roadmap.adj
        self.assertEqual(adj.shape, (len(self.roadmap), len(self.roadmap)))
        np.testing.assert_array_equal(adj, adj.T)
        self.assertFalse(np.diag(adj).any())

    def test_edges_avoid_obstacles(self):
        for i, j in np.argwhere(np.triu(self.roadmap.adj, k=1)):
            a, b = self.roadmap.node(i), self.roadmap.node(j)
            dx, dy = float(b.map_col - a.map_col), float(b.map_row - a.map_row)
            length = np.hypot(dx, dy)
            if length == 0.0:
                continue
            for d in np.append(np.arange(0.0, length, 1.0), length):
                col = int(np.floor(a.map_col + d * (dx / length) + 0.5))
                row = int(np.floor(a.map_row + d * (dy / length) + 0.5))
                self.assertEqual(self.grid.cells[row, col], 1, (i, j, col, row))

    def test_no_edge_through_block(self):
        left, right = 0, 1
        self.assertEqual(self.roadmap.adj[left, right], 0)
        self.assertTrue(self.roadmap.check_reachability())

    def test_snapshot(self):
        snap = self.roadmap.snapshot()
        self.assertEqual(snap['numAnchors'], 3)
        self.assertEqual(len(snap['nodes']), len(self.roadmap))
        self.assertEqual(len(snap['edges']), self.roadmap.edge_count())
        self.assertTrue(all(i < j for i, j in snap['edges']))


class TestDynamicInsertion(unittest.TestCase):

    def setUp(self):
        self.grid = make_grid(20, 20)
        self.roadmap = RoadMap(self.grid, anchors_at(self.grid, (3, 3), (16, 16)), num_points=4, seed=9)
        self.roadmap.build(max_attempts=3)

    def test_add_point_appends_without_edges(self):
        n = len(self.roadmap)
        old = self.roadmap.adj.copy()
        idx = self.roadmap.add_point(0.0, 0.0)
        self.assertEqual(idx, n)
        self.assertIsInstance(self.roadmap.node(idx), Node)
        self.assertEqual(self.roadmap.adj.shape, (n + 1, n + 1))
        self.assertFalse(self.roadmap.adj[idx].any())
        np.testing.assert_array_equal(self.roadmap.adj[:n, :n], old)

    def test_regenerate_connects_new_node(self):
        idx = self.roadmap.add_point(0.0, 0.0)
        self.roadmap.regenerate_edges()
        self.assertTrue(self.roadmap.adj[idx].any())
        self.assertEqual(path_indices(astar(self.roadmap, idx, 1))[-1], 1)

    def test_regenerate_sees_new_obstacles(self):
        self.assertEqual(self.roadmap.adj[0, 1], 1)
        for k in range(20):
            self.grid.cells[19 - k, k] = 0  # anti-diagonal wall, two cells thick
            self.grid.cells[19 - k, min(k + 1, 19)] = 0
        self.roadmap.regenerate_edges()
        self.assertEqual(self.roadmap.adj[0, 1], 0)

    def test_indices_stable(self):
        before = [(n.index, n.map_col, n.map_row) for n in self.roadmap.nodes]
        self.roadmap.add_point(1.0, -2.0)
        self.roadmap.add_point(-3.0, 2.0)
        after = [(n.index, n.map_col, n.map_row) for n in self.roadmap.nodes[:len(before)]]
        self.assertEqual(before, after)


if __name__ == "__main__":
    unittest.main(verbosity=2)
