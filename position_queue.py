import logging
import math
import threading
import time

from geometry import EPSILON, float_eq, normalize_angle
from nav_config import SONAR_RANGE_MAX_M
from robot_link import LinkError


def format_elapsed(seconds):
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{int(hours)}h {int(minutes):02d}m {secs:04.1f}s"


class PositionQueue:
    """
    Sensor bridge between the robot and the control loop.

    A background thread blocks on robot.read_all() and refreshes the cached
    pose, step counter and odometric distance in one locked update. Sonar is
    never polled from that thread; ranges() asks the robot on demand.
    """

    def __init__(self, robot, range_max=SONAR_RANGE_MAX_M):
        self.logger = logging.getLogger("prm.position")
        self.robot = robot
        self.range_max = range_max

        self._cond = threading.Condition()
        self._pose = {'x': 0.0, 'y': 0.0, 'theta': 0.0}
        self._steps = 0
        self._total_dist = 0.0
        self._error = None

        self._running = False
        self._thread = None
        self._tic = None

    # --- Lifecycle ---
    def start(self):
        """Drain stale reads until sonar is ready, then start the refresh thread."""
        drained = 0
        while True:
            self.robot.read_all()
            self._refresh()
            drained += 1
            if self.robot.sonar_ready():
                break
        self.logger.info(f"Sensor warmup done after {drained} reads")

        self._running = True
        self._thread = threading.Thread(target=self._refresh_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._running = False
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _refresh_loop(self):
        while self._running:
            try:
                self.robot.read_all()
            except LinkError as exc:
                self.logger.error(f"Sensor thread stopped: {exc}")
                with self._cond:
                    self._error = exc
                    self._cond.notify_all()
                break
            self._refresh()
        self._running = False

    def _refresh(self):
        x, y, theta = self.robot.pose()
        theta = normalize_angle(theta)
        with self._cond:
            if self._steps > 0:
                self._total_dist += math.hypot(x - self._pose['x'], y - self._pose['y'])
            self._pose = {'x': x, 'y': y, 'theta': theta}
            self._steps += 1
            self._cond.notify_all()

    # --- Snapshots ---
    def pose(self):
        """Atomic snapshot: x, y, theta, steps and total_dist from the same refresh."""
        with self._cond:
            if self._error is not None:
                raise LinkError(f"Sensor thread stopped: {self._error}")
            snap = dict(self._pose)
            snap['steps'] = self._steps
            snap['total_dist'] = self._total_dist
            return snap

    def ranges(self):
        """Poll the sonar ring; NaN, infinite and negative readings become range_max."""
        with self._cond:
            raw = self.robot.sonar_ranges()
            clipped = []
            for r in raw:
                if r is None or not math.isfinite(r) or r < 0.0 or r > self.range_max:
                    r = self.range_max
                clipped.append(float(r))
            return clipped

    def total_distance(self):
        with self._cond:
            return self._total_dist

    def stalled(self):
        with self._cond:
            return bool(self.robot.stall())

    def wait_for_tick(self, after_steps, timeout=1.0):
        """Wait until a refresh newer than `after_steps` lands. Returns the new step count."""
        if not self._running:
            self.robot.read_all()
            self._refresh()
        with self._cond:
            self._cond.wait_for(lambda: self._steps > after_steps or self._error is not None, timeout)
            return self._steps

    # --- Odometry ---
    def set_odometry(self, x, y, theta, max_tries=50):
        """Reset robot odometry and wait until the cached pose agrees; clears total_dist."""
        theta = normalize_angle(theta)
        for attempt in range(1, max_tries + 1):
            self.robot.set_odometry(x, y, theta)
            with self._cond:
                steps = self._steps
            self.wait_for_tick(steps)
            with self._cond:
                p = self._pose
                if (float_eq(p['x'], x) and float_eq(p['y'], y)
                        and abs(normalize_angle(p['theta'] - theta)) < EPSILON):
                    self._total_dist = 0.0
                    self.logger.info(
                        f"Odometry set to ({x:.2f}, {y:.2f}, {math.degrees(theta):.1f} deg) "
                        f"after {attempt} tries"
                    )
                    return True
        raise LinkError(f"Robot never reported odometry ({x:.2f}, {y:.2f}, {theta:.3f})")

    # --- Timing ---
    def tic(self):
        self._tic = time.monotonic()

    def toc(self):
        """Seconds since tic(), or 0.0 if tic() was never called."""
        if self._tic is None:
            return 0.0
        return time.monotonic() - self._tic
