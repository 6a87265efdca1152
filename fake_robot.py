"""In-process robot stand-ins for the offline tests."""
import math
import threading
import time

from geometry import SONAR_COUNT, normalize_angle
from robot_link import LinkError


class FakeRobot:
    """
    Kinematic differential-drive robot: every read_all() integrates the last
    commanded (speed, turn) over `dt` seconds. `sonar` is either a list of 8
    ranges or a callable taking the robot and returning one.
    """

    def __init__(self, x=0.0, y=0.0, theta=0.0, dt=0.1, sonar=None, tick_sec=0.0,
                 sonar_ready_after=1, fail_after=None):
        self.x, self.y, self.theta = x, y, theta
        self.dt = dt
        self.sonar = sonar if sonar is not None else [5.0] * SONAR_COUNT
        self.tick_sec = tick_sec
        self.sonar_ready_after = sonar_ready_after
        self.fail_after = fail_after

        self.speed = 0.0
        self.turn = 0.0
        self.stall_flag = False
        self.reads = 0
        self.sonar_calls = 0
        self.commands = []
        self.odometry_calls = []
        self._pending_odometry = None
        self._lock = threading.Lock()

    def step(self):
        with self._lock:
            if self.fail_after is not None and self.reads >= self.fail_after:
                raise LinkError("fake link dropped")
            self.x += self.speed * math.cos(self.theta) * self.dt
            self.y += self.speed * math.sin(self.theta) * self.dt
            self.theta += self.turn * self.dt
            if self._pending_odometry is not None:
                self.x, self.y, self.theta = self._pending_odometry
                self._pending_odometry = None
            self.reads += 1

    def read_all(self):
        if self.tick_sec:
            time.sleep(self.tick_sec)
        self.step()

    def pose(self):
        with self._lock:
            return self.x, self.y, self.theta

    def sonar_ranges(self):
        with self._lock:
            self.sonar_calls += 1
        if callable(self.sonar):
            return list(self.sonar(self))
        return list(self.sonar)

    def sonar_ready(self):
        return self.reads >= self.sonar_ready_after

    def set_speed(self, speed, turn):
        with self._lock:
            self.speed, self.turn = speed, turn
            self.commands.append((speed, turn))

    def set_odometry(self, x, y, theta):
        with self._lock:
            self.odometry_calls.append((x, y, theta))
            self._pending_odometry = (x, y, theta)

    def stall(self):
        return self.stall_flag


class SyncPositions:
    """Synchronous PositionQueue stand-in: every wait_for_tick() advances the robot one step."""

    def __init__(self, robot, range_max=5.0):
        self.robot = robot
        self.range_max = range_max
        self.steps = 0
        self.total_dist = 0.0

    def pose(self):
        x, y, theta = self.robot.pose()
        return {'x': x, 'y': y, 'theta': normalize_angle(theta), 'steps': self.steps,
                'total_dist': self.total_dist}

    def ranges(self):
        return [r if math.isfinite(r) and 0.0 <= r <= self.range_max else self.range_max
                for r in self.robot.sonar_ranges()]

    def stalled(self):
        return self.robot.stall()

    def wait_for_tick(self, after_steps, timeout=1.0):
        x0, y0, _ = self.robot.pose()
        self.robot.step()
        x1, y1, _ = self.robot.pose()
        self.total_dist += math.hypot(x1 - x0, y1 - y0)
        self.steps += 1
        return self.steps

    def set_odometry(self, x, y, theta):
        self.robot.set_odometry(x, y, theta)
        self.robot.step()
        self.total_dist = 0.0
        return True
