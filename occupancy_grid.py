import logging
import math
import threading

import numpy as np

from nav_config import MAP_WIDTH, MAP_HEIGHT, MPP, PATH_CHECK_INTERVAL

FREE = 1
BLOCKED = 0
RAW_FREE = 255


class MapLoadError(Exception):
    """Bitmap could not be read or has the wrong size."""


def load_bitmap(path, width=MAP_WIDTH, height=MAP_HEIGHT):
    """Read a raw W*H byte bitmap (row-major, 255 = free) into a {0,1} array of shape (H, W)."""
    try:
        with open(path, 'rb') as f:
            raw = f.read()
    except OSError as exc:
        raise MapLoadError(f"Cannot read map {path}: {exc}") from exc
    if len(raw) != width * height:
        raise MapLoadError(
            f"Map {path} has {len(raw)} bytes, expected {width}x{height}={width * height}"
        )
    pixels = np.frombuffer(raw, dtype=np.uint8).reshape(height, width)
    # Anything that is not exactly 255 counts as blocked
    return (pixels == RAW_FREE).astype(np.uint8)


class OccupancyGrid:
    """
    Binary occupancy grid indexed (col, row), col growing with world x and row
    growing with -y, origin of the world frame at the grid center.
    """

    def __init__(self, cells, meters_per_pixel=MPP, path_check_interval=PATH_CHECK_INTERVAL):
        self.logger = logging.getLogger("prm.grid")
        self.cells = np.array(cells, dtype=np.uint8)
        if self.cells.ndim != 2:
            raise ValueError("cells must be a 2-D array")
        self.height, self.width = self.cells.shape
        self.mpp = meters_per_pixel
        self.path_check_interval = path_check_interval
        self._lock = threading.Lock()
        self.discovered = []  # cells blocked at runtime, in order

    @classmethod
    def from_bitmap(cls, path, width=MAP_WIDTH, height=MAP_HEIGHT, meters_per_pixel=MPP, **kwargs):
        grid = cls(load_bitmap(path, width, height), meters_per_pixel=meters_per_pixel, **kwargs)
        grid.logger.info(
            f"Loaded map {path} ({width}x{height} @ {meters_per_pixel:.3f} m/px, "
            f"{int(grid.cells.sum())} free cells)"
        )
        return grid

    # --- Coordinate mapping ---
    def map_of(self, world_x, world_y):
        """World meters -> (col, row), rounded to the nearest cell center."""
        col = int(math.floor(world_x / self.mpp + self.width / 2.0 + 0.5 + 1e-9))
        row = int(math.floor(self.height / 2.0 - world_y / self.mpp + 0.5 + 1e-9))
        return col, row

    def world_of(self, col, row):
        return (col - self.width / 2.0) * self.mpp, (self.height / 2.0 - row) * self.mpp

    def in_bounds(self, col, row):
        return 0 <= col < self.width and 0 <= row < self.height

    # --- Queries ---
    def is_free(self, col, row):
        if not self.in_bounds(col, row):
            return False
        return self.cells[row, col] == FREE

    def is_free_with_buffer(self, col, row, radius):
        """True when every cell of the (2r+1)-square around (col, row), clipped to the grid, is free."""
        if not self.in_bounds(col, row):
            return False
        r0, r1 = max(0, row - radius), min(self.height, row + radius + 1)
        c0, c1 = max(0, col - radius), min(self.width, col + radius + 1)
        return bool(self.cells[r0:r1, c0:c1].all())

    def line_clear(self, p, q, lateral_buffer):
        """
        Check the straight segment p -> q (map cells) for obstacles.

        Samples every `path_check_interval` pixels plus the end point; at each
        sample the cells at perpendicular offsets -B..B must be free. Any of
        those cells falling off the grid blocks the line.
        """
        px, py = float(p[0]), float(p[1])
        dx, dy = float(q[0]) - px, float(q[1]) - py
        length = math.hypot(dx, dy)
        if length == 0.0:
            steps = np.zeros(1)
            ux, uy = 1.0, 0.0
        else:
            steps = np.append(np.arange(0.0, length, self.path_check_interval), length)
            ux, uy = dx / length, dy / length
        offsets = np.arange(-lateral_buffer, lateral_buffer + 1, dtype=float)

        # Perpendicular to (ux, uy) is (-uy, ux)
        xs = px + steps[:, None] * ux - offsets[None, :] * uy
        ys = py + steps[:, None] * uy + offsets[None, :] * ux
        cols = np.floor(xs + 0.5).astype(int)
        rows = np.floor(ys + 0.5).astype(int)

        inside = (cols >= 0) & (cols < self.width) & (rows >= 0) & (rows < self.height)
        if not inside.all():
            return False
        return bool(self.cells[rows, cols].all())

    # --- Writes ---
    def mark_blocked(self, world_x, world_y):
        """Block the cell under a world point. Points off the grid are ignored."""
        col, row = self.map_of(world_x, world_y)
        if not self.in_bounds(col, row):
            self.logger.debug("Ignoring obstacle outside map at (%.2f, %.2f)", world_x, world_y)
            return False
        with self._lock:
            if self.cells[row, col] == FREE:
                self.cells[row, col] = BLOCKED
                self.discovered.append((col, row))
        return True

    def snapshot(self):
        """Read-only view for rendering: dimensions plus cells blocked since load."""
        with self._lock:
            return {
                'width': self.width,
                'height': self.height,
                'metersPerPixel': self.mpp,
                'discovered': [list(c) for c in self.discovered],
            }
