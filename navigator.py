import logging
import math
import sys

from motion_controller import MotionController, RobotStalled
from nav_config import (
    configure_logging,
    MAP_FILE,
    MAP_WIDTH,
    MAP_HEIGHT,
    MPP,
    INITIAL_POSITIONS,
    ROBOT_ID,
    ROBOT_INDEX,
    LINK_HOST,
    LINK_PORT,
    LINK_URL,
    MAX_REPLANS,
    PRM_MAX_ATTEMPTS,
    KAFKA_ENABLED,
    KAFKA_BOOTSTRAP_SERVERS,
    KAFKA_TOPIC_TELEMETRY,
    KAFKA_TOPIC_MAP,
)
from occupancy_grid import MapLoadError, OccupancyGrid
from planner import astar, path_indices, to_waypoints
from position_queue import PositionQueue, format_elapsed
from roadmap import RoadMap, RoadMapError
from robot_link import LinkError, SerialRobotLink
from telemetry_bridge import TelemetryBridge

USAGE = "usage: prm-navigator [-i] [host port] points_file"


class DestinationFileError(Exception):
    """Destinations file missing or malformed."""


class PlanningError(Exception):
    """No path to a destination, even after replanning."""


class UsageError(ValueError):
    pass


def parse_destinations(path):
    """Read `x y` pairs (meters), one per line. Blank lines and lines starting with '#' are skipped."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except OSError as exc:
        raise DestinationFileError(f"Cannot read destinations {path}: {exc}") from exc

    destinations = []
    for lineno, line in enumerate(lines, start=1):
        text = line.strip()
        if not text or text.startswith('#'):
            continue
        parts = text.split()
        if len(parts) != 2:
            raise DestinationFileError(f"{path}:{lineno}: expected 'x y', got {text!r}")
        try:
            x, y = float(parts[0]), float(parts[1])
        except ValueError:
            raise DestinationFileError(f"{path}:{lineno}: not a number in {text!r}") from None
        if not (math.isfinite(x) and math.isfinite(y)):
            raise DestinationFileError(f"{path}:{lineno}: non-finite coordinate in {text!r}")
        destinations.append((x, y))

    if not destinations:
        raise DestinationFileError(f"{path}: no destinations")
    return destinations


def parse_args(argv):
    """[-i] points_file  |  [-i] host port points_file"""
    args = list(argv)
    interactive = False
    if args and args[0] == '-i':
        interactive = True
        args = args[1:]

    if len(args) == 1:
        return {'interactive': interactive, 'host': None, 'port': None, 'points_file': args[0]}
    if len(args) == 3:
        try:
            port = int(args[1])
        except ValueError:
            raise UsageError(f"port must be an integer, got {args[1]!r}") from None
        return {'interactive': interactive, 'host': args[0], 'port': port, 'points_file': args[2]}
    raise UsageError(USAGE)


class Navigator:
    """
    Goal loop: build the road map, then for every destination plan, follow
    and, when the robot cannot get through, add its position as a node,
    reconnect the map and plan again.
    """

    def __init__(self, grid, robot, destinations, initial_positions=INITIAL_POSITIONS,
                 robot_index=ROBOT_INDEX, interactive=False, telemetry=None,
                 max_replans=MAX_REPLANS, roadmap_kwargs=None, motion_kwargs=None):
        self.logger = logging.getLogger("prm.navigator")
        self.grid = grid
        self.robot = robot
        self.destinations = list(destinations)
        self.initial_positions = list(initial_positions)
        self.robot_index = robot_index
        self.interactive = interactive
        self.telemetry = telemetry
        self.max_replans = max_replans
        self.roadmap_kwargs = roadmap_kwargs or {}
        self.motion_kwargs = motion_kwargs or {}

        self.roadmap = None
        self.positions = None
        self.controller = None

    def _pause(self, prompt):
        if not self.interactive:
            return
        try:
            input(f"{prompt} Press Enter to continue...")
        except EOFError:
            self.interactive = False

    def _publish_map(self):
        if self.telemetry:
            self.telemetry.send_map(self.grid.snapshot(), self.roadmap.snapshot())

    def build_roadmap(self, max_attempts=PRM_MAX_ATTEMPTS):
        anchors = [(p[0], p[1]) for p in self.initial_positions] + self.destinations
        self.roadmap = RoadMap(self.grid, anchors, **self.roadmap_kwargs)
        self.roadmap.build(max_attempts)
        self._publish_map()
        return self.roadmap

    def run(self):
        """Visit every destination in order. Raises on fatal errors."""
        if self.roadmap is None:
            self.build_roadmap()
        self._pause("Road map ready.")

        self.positions = PositionQueue(self.robot)
        self.positions.start()
        if self.telemetry:
            self.telemetry.start(self.positions.pose)
        self.positions.tic()
        self.controller = MotionController(self.positions, self.robot, self.grid, **self.motion_kwargs)

        try:
            start = self.robot_index
            first_destination = len(self.initial_positions)
            for k, dest in enumerate(self.destinations):
                goal = first_destination + k
                self.logger.info(f"Destination {k + 1}/{len(self.destinations)}: ({dest[0]:.2f}, {dest[1]:.2f})")
                self._reach(start, goal, k)
                start = goal
                pose = self.positions.pose()
                self.logger.info(f"Reached destination {k + 1} at ({pose['x']:.2f}, {pose['y']:.2f})")
                if self.telemetry:
                    self.telemetry.send_goal_reached(k, pose)
        finally:
            try:
                self.controller.stop()
            except LinkError as exc:
                self.logger.warning(f"Could not stop robot: {exc}")
            self.logger.info(
                f"Elapsed {format_elapsed(self.positions.toc())}, "
                f"odometric distance {self.positions.total_distance():.2f} m"
            )
            self.positions.stop()

    def _reach(self, start, goal, dest_number):
        replans = 0
        while True:
            plan = astar(self.roadmap, start, goal)
            if plan is None:
                raise PlanningError(f"No path from node {start} to node {goal}")
            indices = path_indices(plan)
            waypoints = to_waypoints(self.roadmap, plan)
            self.logger.info(f"Path {' -> '.join(str(i) for i in indices)}")
            self.logger.debug("Waypoints %s", ", ".join(f"({x:.2f}, {y:.2f})" for x, y in waypoints))
            if self.telemetry:
                self.telemetry.send_path(dest_number, indices, waypoints)
            self._pause("Path planned.")

            if self.controller.follow_path(waypoints):
                return

            replans += 1
            if replans > self.max_replans:
                raise PlanningError(f"Gave up on node {goal} after {self.max_replans} replans")
            pose = self.positions.pose()
            start = self.roadmap.add_point(pose['x'], pose['y'])
            self.roadmap.regenerate_edges()
            self.logger.info(f"Replan {replans}/{self.max_replans} from node {start}")
            if self.telemetry:
                self.telemetry.send_replan(dest_number, replans, start)
            self._publish_map()


def main(argv=None):
    configure_logging()
    logger = logging.getLogger("prm.navigator")
    try:
        args = parse_args(sys.argv[1:] if argv is None else argv)
    except UsageError as exc:
        logger.error(str(exc))
        print(USAGE)
        return 1

    link = None
    telemetry = None
    try:
        destinations = parse_destinations(args['points_file'])
        logger.info(f"Loaded {len(destinations)} destinations from {args['points_file']}")
        grid = OccupancyGrid.from_bitmap(MAP_FILE, MAP_WIDTH, MAP_HEIGHT, MPP)

        if args['host'] is not None:
            link = SerialRobotLink.for_host(args['host'], args['port'])
        elif LINK_URL:
            link = SerialRobotLink(LINK_URL)
        else:
            link = SerialRobotLink.for_host(LINK_HOST, LINK_PORT)
        link.connect()

        if KAFKA_ENABLED and ROBOT_ID:
            telemetry = TelemetryBridge(
                robot_id=ROBOT_ID,
                bootstrap=KAFKA_BOOTSTRAP_SERVERS,
                topics={"telemetry": KAFKA_TOPIC_TELEMETRY, "map": KAFKA_TOPIC_MAP},
            )

        navigator = Navigator(grid, link, destinations, interactive=args['interactive'], telemetry=telemetry)
        navigator.run()
        logger.info(f"All {len(destinations)} destinations reached.")
        return 0
    except (MapLoadError, DestinationFileError, RoadMapError, PlanningError, RobotStalled, LinkError) as exc:
        logger.error(f"Fatal: {exc}")
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted by user")
        return 1
    finally:
        if telemetry:
            telemetry.stop()
        if link is not None and link.connected:
            try:
                link.set_speed(0.0, 0.0)
            except LinkError as exc:
                logger.warning(f"Could not stop robot: {exc}")
            link.disconnect()


if __name__ == '__main__':
    sys.exit(main())
