import logging
import math

import numpy as np

from geometry import SONAR_ANGLES, SONAR_COUNT, bearing, closest_sonar_index, normalize_angle, sonar_offset
from nav_config import (
    DEFAULT_FORWARD_SPEED,
    MAX_TURNRATE,
    GOAL_TOLERANCE_M,
    ANGLE_TOLERANCE,
    K_ATT,
    ATT_CAP,
    RHO0,
    K_REP,
    STUCK_THRESHOLD,
    OSCILLATION_PENALTY,
    UNSAFE_FRONT_M,
    UNSAFE_NEAR_FRONT_M,
    MAX_ESCAPES,
    SEED_HEADING,
    WALL_DISTANCE_M,
    WALL_GAIN,
    WALL_FRONT_STOP_M,
    WALL_EXIT_RANGE_M,
    WALL_MIN_STEPS,
    WALL_MAX_STEPS,
    OBSTACLE_DETECT_RANGE_M,
    OBSTACLE_FAN_HALF,
    OBSTACLE_FAN_STEP,
    OBSTACLE_RADIAL_STEPS,
)

SIDE_RIGHT = 'right'
SIDE_LEFT = 'left'


def _wall_sonars(sign):
    """Sonar roles for a wall on one side (sign -1 right, +1 left), named by angle off the wall normal."""
    def at(deg):
        return closest_sonar_index(math.radians(sign * deg))
    return {
        'dtw': at(90), 'd40': at(50), 'd60': at(30), 'd80': at(10), 'd110': at(-10),
        'open': (at(-90), at(-50), at(-30)),
    }


WALL_SONARS = {SIDE_RIGHT: _wall_sonars(-1), SIDE_LEFT: _wall_sonars(1)}

ROTATE_MAX_STEPS = 400


class RobotStalled(Exception):
    """Robot reported a stall while being commanded."""


def shape_velocity(dx, dy, theta, max_speed=DEFAULT_FORWARD_SPEED, max_turn=MAX_TURNRATE):
    """
    Turn a world-frame force (dx, dy) into (speed, turnrate).

    The turn is the heading error capped at +-max_turn; the speed is the force
    magnitude capped at max_speed and reduced linearly as the turn saturates.
    """
    total_angle = normalize_angle(math.atan2(dy, dx) - theta)
    turn = max(-max_turn, min(max_turn, total_angle))
    speed = min(math.hypot(dx, dy), max_speed)
    speed *= (1.0 - abs(turn) / max_turn)
    return speed, turn


def attractive_force(cx, cy, nx, ny, k_att=K_ATT, cap=ATT_CAP):
    """F_att = -k_att * (q - goal), scaled down to |F| <= cap keeping its direction."""
    fx = -k_att * (cx - nx)
    fy = -k_att * (cy - ny)
    mag = math.hypot(fx, fy)
    if mag > cap:
        fx *= cap / mag
        fy *= cap / mag
    return fx, fy


def repulsive_force(theta, ranges, rho0=RHO0, k_rep=K_REP):
    """Sum of sonar repulsions, each pushing away from its beam direction in world axes."""
    fx = fy = 0.0
    for i in range(SONAR_COUNT):
        r = ranges[i]
        if r >= rho0[i]:
            continue
        r += sonar_offset(i)
        frep = k_rep[i] * (1.0 / r - 1.0 / rho0[i]) * (1.0 / r ** 2)
        if frep <= 0.0:
            continue
        beam = theta + SONAR_ANGLES[i]
        fx -= frep * math.cos(beam)
        fy -= frep * math.sin(beam)
    return fx, fy


class MotionController:
    """
    Drives the robot through a waypoint list with potential-field motion,
    escaping local minima by wall following and writing discovered obstacles
    into the occupancy grid when a waypoint cannot be reached.

    `positions` is a PositionQueue (pose/ranges/stalled/wait_for_tick/
    set_odometry); `robot` receives set_speed commands.
    """

    def __init__(self, positions, robot, grid,
                 forward_speed=DEFAULT_FORWARD_SPEED, max_turnrate=MAX_TURNRATE,
                 goal_tolerance=GOAL_TOLERANCE_M, angle_tolerance=ANGLE_TOLERANCE,
                 stuck_threshold=STUCK_THRESHOLD, oscillation_penalty=OSCILLATION_PENALTY,
                 max_escapes=MAX_ESCAPES, seed_heading=SEED_HEADING,
                 wall_min_steps=WALL_MIN_STEPS, wall_max_steps=WALL_MAX_STEPS):
        self.logger = logging.getLogger("prm.motion")
        self.positions = positions
        self.robot = robot
        self.grid = grid

        self.forward_speed = forward_speed
        self.max_turnrate = max_turnrate
        self.goal_tolerance = goal_tolerance
        self.angle_tolerance = angle_tolerance
        self.stuck_threshold = stuck_threshold
        self.oscillation_penalty = oscillation_penalty
        self.max_escapes = max_escapes
        self.seed_heading = seed_heading
        self.wall_min_steps = wall_min_steps
        self.wall_max_steps = wall_max_steps

        self.odometry_seeded = False
        self.stuck = 0
        self._last_saturation = 0

    # --- Actuation ---
    def _command(self, speed, turn):
        if self.positions.stalled():
            self.robot.set_speed(0.0, 0.0)
            raise RobotStalled("Robot stalled")
        self.robot.set_speed(speed, turn)

    def stop(self):
        self.robot.set_speed(0.0, 0.0)

    def go(self, dx, dy, pose):
        """Command the velocity shaped from world-frame force (dx, dy)."""
        speed, turn = shape_velocity(dx, dy, pose['theta'], self.forward_speed, self.max_turnrate)
        self.logger.debug("GO [%.3f, %.3f] -> speed=%.3f turn=%.3f", dx, dy, speed, turn)
        self._command(speed, turn)
        return speed, turn

    def _tick(self, pose):
        self.positions.wait_for_tick(pose['steps'])

    def rotate_to(self, heading):
        """Turn in place until within angle_tolerance of a world heading."""
        for _ in range(ROTATE_MAX_STEPS):
            pose = self.positions.pose()
            err = normalize_angle(heading - pose['theta'])
            if abs(err) < self.angle_tolerance:
                self.stop()
                return True
            self._command(0.0, max(-self.max_turnrate, min(self.max_turnrate, err)))
            self._tick(pose)
        self.stop()
        self.logger.warning(f"Rotate to {math.degrees(heading):.1f} deg did not settle")
        return False

    def rotate180(self):
        pose = self.positions.pose()
        return self.rotate_to(normalize_angle(pose['theta'] + math.pi))

    # --- Path following ---
    def follow_path(self, waypoints):
        """
        Visit waypoints[1:] in order. The first call seeds odometry with
        waypoints[0] in place of localization. Returns False on the first
        waypoint that could not be reached.
        """
        if not waypoints:
            return True
        if not self.odometry_seeded:
            x0, y0 = waypoints[0]
            self.positions.set_odometry(x0, y0, self.seed_heading)
            self.odometry_seeded = True

        for n, (nx, ny) in enumerate(waypoints[1:], start=1):
            self.logger.info(f"Waypoint {n}/{len(waypoints) - 1} -> ({nx:.2f}, {ny:.2f})")
            if not self.potential_field_motion(nx, ny):
                self.logger.info(f"Waypoint ({nx:.2f}, {ny:.2f}) not reached")
                return False
            self.logger.info(f"Reached waypoint ({nx:.2f}, {ny:.2f})")
        return True

    def potential_field_motion(self, nx, ny):
        """Move to (nx, ny). True once within goal_tolerance; False after giving up on it."""
        pose = self.positions.pose()
        self.rotate_to(bearing(pose['x'], pose['y'], nx, ny))

        self.stuck = 0
        self._last_saturation = 0
        escapes = 0
        while True:
            pose = self.positions.pose()
            cx, cy, theta = pose['x'], pose['y'], pose['theta']
            if math.hypot(nx - cx, ny - cy) < self.goal_tolerance:
                if self._close_in(nx, ny) < self.goal_tolerance:
                    return True
                continue

            ranges = self.positions.ranges()
            self.logger.debug("Sonar: %s", " ".join(f"{r:.2f}" for r in ranges))

            fattx, fatty = attractive_force(cx, cy, nx, ny)
            frepx, frepy = repulsive_force(theta, ranges)
            fx, fy = fattx + frepx, fatty + frepy
            self.logger.debug(
                "fatt=[%.3f, %.3f] frep=[%.3f, %.3f] f=[%.3f, %.3f]", fattx, fatty, frepx, frepy, fx, fy
            )

            if self.stuck > self.stuck_threshold or self._unsafe(fattx, fatty, theta, ranges):
                escapes += 1
                if escapes > self.max_escapes:
                    self.logger.info(f"Giving up on ({nx:.2f}, {ny:.2f}) after {escapes - 1} escapes")
                    self.stop()
                    self.on_obstacle()
                    self.rotate180()
                    return False
                self.stop()
                self.rotate_to(bearing(cx, cy, nx, ny))
                side = self._choose_wall_side(self.positions.ranges())
                self.logger.info(f"Local minimum (stuck={self.stuck}); wall following on the {side}")
                self.wall_follow_motion(nx, ny, side)
                self.stuck = 0
                self._last_saturation = 0
                continue

            _, turn = self.go(fx, fy, pose)
            self._note_turn(turn)
            self._tick(pose)

    def _note_turn(self, turn):
        """Count saturated turns toward a local minimum; a saturation sign flip adds oscillation_penalty."""
        if abs(turn) < self.max_turnrate:
            self._last_saturation = 0
            return self.stuck
        saturation = 1 if turn > 0 else -1
        self.stuck += 1
        if self._last_saturation and saturation != self._last_saturation:
            self.stuck += self.oscillation_penalty
        self._last_saturation = saturation
        return self.stuck

    def _close_in(self, nx, ny):
        """Keep driving at the goal while the distance strictly shrinks. Returns the final distance."""
        pose = self.positions.pose()
        best = math.hypot(nx - pose['x'], ny - pose['y'])
        while True:
            self.go(*attractive_force(pose['x'], pose['y'], nx, ny), pose)
            self._tick(pose)
            pose = self.positions.pose()
            dist = math.hypot(nx - pose['x'], ny - pose['y'])
            if dist >= best:
                break
            best = dist
        self.stop()
        return dist

    def _unsafe(self, fattx, fatty, theta, ranges):
        """Attraction alone would not move the robot forward and something is right in front."""
        speed, _ = shape_velocity(fattx, fatty, theta, self.forward_speed, self.max_turnrate)
        if speed > 0.0:
            return False
        return (ranges[3] < UNSAFE_FRONT_M or ranges[4] < UNSAFE_FRONT_M
                or ranges[2] < UNSAFE_NEAR_FRONT_M or ranges[5] < UNSAFE_NEAR_FRONT_M)

    @staticmethod
    def _choose_wall_side(ranges):
        closest = min((1, 2, 5, 6), key=lambda i: ranges[i])
        return SIDE_RIGHT if closest in (1, 2) else SIDE_LEFT

    # --- Wall following ---
    def wall_follow_motion(self, nx, ny, side):
        """
        Hold WALL_DISTANCE_M to a wall on `side`. Returns True when the goal is
        reached or, after wall_min_steps, when the open side shows a range past
        WALL_EXIT_RANGE_M; False if neither happens within wall_max_steps.
        """
        idx = WALL_SONARS[side]
        k = WALL_GAIN if side == SIDE_RIGHT else -WALL_GAIN
        cos40, cos60 = math.cos(math.radians(40)), math.cos(math.radians(60))

        for step in range(1, self.wall_max_steps + 1):
            pose = self.positions.pose()
            if math.hypot(nx - pose['x'], ny - pose['y']) < self.goal_tolerance:
                self.stop()
                self.logger.info("Goal reached while wall following")
                return True

            ranges = self.positions.ranges()
            if step > self.wall_min_steps and any(ranges[i] > WALL_EXIT_RANGE_M for i in idx['open']):
                self.stop()
                self.logger.info(f"Wall following done after {step} steps")
                return True

            # Nearest wall estimate, projected onto the wall normal
            dist = min(ranges[idx['dtw']], ranges[idx['d40']] * cos40, ranges[idx['d60']] * cos60)
            if ranges[idx['d80']] < WALL_FRONT_STOP_M or ranges[idx['d110']] < WALL_FRONT_STOP_M:
                turn = math.copysign(self.max_turnrate, k)
            else:
                turn = k * (WALL_DISTANCE_M - dist)
            turn = max(-self.max_turnrate, min(self.max_turnrate, turn))
            speed = self.forward_speed * (1.0 - abs(turn) / self.max_turnrate)
            self.logger.debug("Wall %s: dist=%.2f speed=%.3f turn=%.3f", side, dist, speed, turn)
            self._command(speed, turn)
            self._tick(pose)

        self.stop()
        self.logger.info(f"Wall following gave up after {self.wall_max_steps} steps")
        return False

    # --- Map updates ---
    def on_obstacle(self):
        """Mark a fan of cells behind every close sonar return as blocked. Returns the number of writes."""
        pose = self.positions.pose()
        cx, cy, theta = pose['x'], pose['y'], pose['theta']
        ranges = self.positions.ranges()
        fan = np.arange(-OBSTACLE_FAN_HALF, OBSTACLE_FAN_HALF + 1e-9, OBSTACLE_FAN_STEP)

        writes = 0
        for i, r in enumerate(ranges):
            if r >= OBSTACLE_DETECT_RANGE_M:
                continue
            reach = r + sonar_offset(i)
            for delta in fan:
                heading = theta + SONAR_ANGLES[i] + delta
                for j in range(OBSTACLE_RADIAL_STEPS):
                    dist = reach + j * self.grid.mpp
                    if self.grid.mark_blocked(cx + math.cos(heading) * dist, cy + math.sin(heading) * dist):
                        writes += 1
        self.logger.info(f"Obstacle update at ({cx:.2f}, {cy:.2f}): {writes} cells written")
        return writes
