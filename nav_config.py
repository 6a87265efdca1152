import json
import logging
import logging.handlers
import math
import os
import sys
from pathlib import Path


def load_robot_config():
    """Load configuration from robot_config.json. Raises error if file missing.

    PRM_NAV_CONFIG may point at a different file.
    """
    config_path = Path(os.environ.get('PRM_NAV_CONFIG', Path(__file__).parent / "robot_config.json"))

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            "Please create robot_config.json with required settings."
        )

    with open(config_path, 'r') as f:
        return json.load(f)


# Load config once at module level
ROBOT_CONFIG = load_robot_config()

LOG_FILE = ROBOT_CONFIG.get('logging', {}).get('file', 'navigator.log')
LOG_LEVEL = ROBOT_CONFIG.get('logging', {}).get('level', 'INFO').upper()


def configure_logging():
    """Configure console + rotating file logging.

    Console: LOG_LEVEL from config
    File: INFO level to keep logs from being too noisy
    """
    console_level = getattr(logging, LOG_LEVEL, logging.INFO)
    file_level = logging.INFO

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    root = logging.getLogger()
    if root.handlers:
        root.handlers.clear()
    root.setLevel(logging.DEBUG)  # Root accepts all, handlers filter

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(formatter)

    file_handler = logging.handlers.RotatingFileHandler(
        LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(formatter)

    root.addHandler(console)
    root.addHandler(file_handler)

    logger = logging.getLogger("prm.navigator")
    logger.info(
        f"Logging configured: Console={logging.getLevelName(console_level)}, "
        f"File={logging.getLevelName(file_level)} -> {LOG_FILE}"
    )


# Map (from config file)
_map_cfg = ROBOT_CONFIG.get('map', {})
MAP_FILE = _map_cfg.get('file', '3large.raw')
MAP_WIDTH = _map_cfg.get('width', 1600)     # 131.2 m
MAP_HEIGHT = _map_cfg.get('height', 500)    # 41 m
MPP = _map_cfg.get('meters_per_pixel', 0.082)

# Probabilistic road map
_roadmap_cfg = ROBOT_CONFIG.get('roadmap', {})
NUM_RANDOM_POINTS = _roadmap_cfg.get('num_points', 500)
POINT_BUFFER = _roadmap_cfg.get('point_buffer', 5)
PATH_BUFFER = _roadmap_cfg.get('path_buffer', 4)
PATH_CHECK_INTERVAL = _roadmap_cfg.get('path_check_interval', 1)  # must be less than minimum obstacle width
PRM_MAX_ATTEMPTS = _roadmap_cfg.get('max_attempts', 50)
PRM_MAX_SAMPLES_PER_POINT = _roadmap_cfg.get('max_samples_per_point', 1000)
PRM_SEED = _roadmap_cfg.get('seed')

# Robot identity and the start poses of every robot in the world [x, y, theta_deg]
_robot_cfg = ROBOT_CONFIG.get('robot', {})
ROBOT_ID = _robot_cfg.get('id')
ROBOT_INDEX = _robot_cfg.get('index', 0)
SEED_HEADING = math.radians(_robot_cfg.get('seed_heading_deg', 0.0))
INITIAL_POSITIONS = [tuple(p) for p in _robot_cfg.get('initial_positions', [
    [-15.5, 12.0, 0.0],
    [-16.5, 12.0, 180.0],
    [-5.0, -10.5, 0.0],
    [7.5, 1.0, 90.0],
    [-48.0, 12.0, 90.0],
    [-48.0, -10.5, 270.0],
    [7.5, -5.0, 90.0],
    [0.0, -7.0, 270.0],
])]

# Robot link
_link_cfg = ROBOT_CONFIG.get('link', {})
LINK_HOST = _link_cfg.get('host', 'localhost')
LINK_PORT = _link_cfg.get('port', 6665)
LINK_URL = _link_cfg.get('url')
LINK_BAUD_RATE = _link_cfg.get('baud_rate', 115200)
SONAR_TIMEOUT_SEC = _link_cfg.get('sonar_timeout_sec', 0.5)

# Motion
_motion_cfg = ROBOT_CONFIG.get('motion', {})
DEFAULT_FORWARD_SPEED = _motion_cfg.get('forward_speed', 1.0)  # m/s
MAX_TURNRATE = math.radians(_motion_cfg.get('max_turnrate_deg', 45.0))  # rad/s
GOAL_TOLERANCE_M = _motion_cfg.get('goal_tolerance_m', 0.5)
ANGLE_TOLERANCE = math.radians(_motion_cfg.get('angle_tolerance_deg', 3.0))
K_ATT = _motion_cfg.get('k_att', 20.0)
ATT_CAP = _motion_cfg.get('att_cap', 20.0)
RHO0 = list(_motion_cfg.get('rho0', [2.5] * 8))      # distance of influence per sonar
K_REP = list(_motion_cfg.get('k_rep', [8.2] * 8))    # repulsive gain per sonar
STUCK_THRESHOLD = _motion_cfg.get('stuck_threshold', 30)
OSCILLATION_PENALTY = _motion_cfg.get('oscillation_penalty', 10)
UNSAFE_FRONT_M = _motion_cfg.get('unsafe_front_m', 0.2)
UNSAFE_NEAR_FRONT_M = _motion_cfg.get('unsafe_near_front_m', 0.1)
MAX_ESCAPES = _motion_cfg.get('max_escapes', 3)
MAX_REPLANS = _motion_cfg.get('max_replans', 10)

# Wall following
_wall_cfg = ROBOT_CONFIG.get('wall_follow', {})
WALL_DISTANCE_M = _wall_cfg.get('distance_m', 0.3)
WALL_GAIN = _wall_cfg.get('gain', 5.0)
WALL_FRONT_STOP_M = _wall_cfg.get('front_stop_m', 0.3)
WALL_EXIT_RANGE_M = _wall_cfg.get('exit_range_m', 1.0)
WALL_MIN_STEPS = _wall_cfg.get('min_steps', 0)
WALL_MAX_STEPS = _wall_cfg.get('max_steps', 600)

# Obstacle discovery
_obstacle_cfg = ROBOT_CONFIG.get('obstacle', {})
OBSTACLE_DETECT_RANGE_M = _obstacle_cfg.get('detect_range_m', 0.75)
OBSTACLE_FAN_HALF = math.radians(_obstacle_cfg.get('fan_half_deg', 7.5))
OBSTACLE_FAN_STEP = math.radians(_obstacle_cfg.get('fan_step_deg', 1.0))
OBSTACLE_RADIAL_STEPS = _obstacle_cfg.get('radial_steps', 3)

SONAR_RANGE_MAX_M = ROBOT_CONFIG.get('sonar', {}).get('range_max_m', 5.0)

# Kafka configuration (from config file, with environment variable overrides)
_kafka_cfg = ROBOT_CONFIG.get('kafka', {})
KAFKA_ENABLED = _kafka_cfg.get('enabled', False)
KAFKA_BOOTSTRAP_SERVERS = os.environ.get('KAFKA_BOOTSTRAP_SERVERS', _kafka_cfg.get('bootstrap_servers', 'localhost:9092'))
KAFKA_TOPIC_TELEMETRY = _kafka_cfg.get('topic_telemetry', 'robot.telemetry')
KAFKA_TOPIC_MAP = _kafka_cfg.get('topic_map', 'robot.map')
