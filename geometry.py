import math

EPSILON = 0.001

# Sonar mount poses in the robot frame: (x_m, y_m, angle_deg).
# Index 0 is leftmost (+90 deg), index 7 rightmost (-90 deg).
SONAR_POSES = (
    (0.075, 0.130, 90.0),
    (0.115, 0.115, 50.0),
    (0.150, 0.080, 30.0),
    (0.170, 0.025, 10.0),
    (0.170, -0.025, -10.0),
    (0.150, -0.080, -30.0),
    (0.115, -0.115, -50.0),
    (0.075, -0.130, -90.0),
)
SONAR_COUNT = len(SONAR_POSES)
SONAR_ANGLES = tuple(math.radians(p[2]) for p in SONAR_POSES)


def normalize_angle(theta):
    """Normalize an angle in radians to (-pi, pi]; values within EPSILON of -pi become pi."""
    while theta > math.pi:
        theta -= 2.0 * math.pi
    while theta <= -math.pi:
        theta += 2.0 * math.pi
    if float_eq(theta, -math.pi):
        theta = math.pi
    return theta


def float_eq(a, b, eps=EPSILON):
    return abs(a - b) < eps


def sonar_offset(index):
    """Distance from the robot origin to sonar `index`."""
    px, py, _ = SONAR_POSES[index]
    return math.hypot(px, py)


def closest_sonar_index(angle):
    """Index of the sonar whose mount angle (radians, robot frame) is nearest `angle`."""
    angle = normalize_angle(angle)
    best = 0
    best_err = math.inf
    for i, mount in enumerate(SONAR_ANGLES):
        err = abs(normalize_angle(angle - mount))
        if err < best_err:
            best, best_err = i, err
    return best


def bearing(cx, cy, nx, ny):
    """World-frame heading from (cx, cy) toward (nx, ny)."""
    return math.atan2(ny - cy, nx - cx)
