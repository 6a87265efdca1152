import logging
import math
import queue
import threading
import time

import serial

from geometry import SONAR_COUNT
from nav_config import LINK_BAUD_RATE, SONAR_TIMEOUT_SEC, SONAR_RANGE_MAX_M


class LinkError(Exception):
    """Robot transport could not be opened or was lost."""


class SerialRobotLink:
    """
    Robot interface over a line-oriented pyserial connection.

    Robot -> host:
        x,y,theta[,stall]      odometry frame (theta in radians)
        SONAR r0,r1,...,r7     sonar reply, meters
        anything else          response line (logged and queued)
    Host -> robot:
        SET_SPEED v w | SET_ODOM x y theta | GET_SONAR
    """

    def __init__(self, url, baud_rate=LINK_BAUD_RATE, sonar_timeout=SONAR_TIMEOUT_SEC,
                 range_max=SONAR_RANGE_MAX_M):
        self.logger = logging.getLogger("prm.link")
        self.url = url
        self.baud_rate = baud_rate
        self.sonar_timeout = sonar_timeout
        self.range_max = range_max

        self.serial_conn = None
        self.response_queue = queue.Queue()
        self._write_lock = threading.Lock()

        # Frame cache, guarded by _cond
        self._cond = threading.Condition()
        self._pose = (0.0, 0.0, 0.0)
        self._stall = False
        self._ranges = [range_max] * SONAR_COUNT
        self._frames = 0
        self._sonar_frames = 0

        self._running = False
        self._thread = None

    @classmethod
    def for_host(cls, host, port, **kwargs):
        return cls(f"socket://{host}:{port}", **kwargs)

    # --- Connection management ---
    def connect(self):
        self.logger.info(f"Connecting to robot at {self.url}...")
        try:
            self.serial_conn = serial.serial_for_url(self.url, baudrate=self.baud_rate, timeout=0.2)
        except (serial.SerialException, ValueError) as exc:
            raise LinkError(f"Error opening {self.url}: {exc}") from exc

        self._running = True
        self._thread = threading.Thread(target=self._reader_loop, daemon=True)
        self._thread.start()

        # Ask for one sonar frame up front so warmup can see sonar_ready()
        self._send("GET_SONAR")
        self.logger.info(f"Connected to {self.url}.")

    def disconnect(self):
        self.logger.info("Disconnecting...")
        self._running = False
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self.serial_conn and self.serial_conn.is_open:
            try:
                self.serial_conn.close()
            except serial.SerialException as exc:
                self.logger.warning(f"Error closing {self.url}: {exc}")
        with self._cond:
            self._cond.notify_all()
        self.logger.info("Disconnected.")

    @property
    def connected(self):
        return self._running

    def _send(self, text):
        if not self.serial_conn:
            raise LinkError("Robot link is not connected")
        cmd = text.strip() + "\r\n"
        try:
            with self._write_lock:
                self.serial_conn.write(cmd.encode('utf-8'))
        except serial.SerialException as exc:
            raise LinkError(f"Write to {self.url} failed: {exc}") from exc

    # --- Reader thread ---
    def _reader_loop(self):
        while self._running and self.serial_conn and self.serial_conn.is_open:
            try:
                raw = self.serial_conn.readline()
            except serial.SerialException as exc:
                self.logger.error(f"Serial read error: {exc}")
                break
            if not raw:
                continue
            line = raw.decode('utf-8', errors='ignore').strip()
            if not line:
                continue
            if line[0].isdigit() or line[0] == '-':
                self._handle_odometry(line)
                continue
            if line.startswith("SONAR"):
                self._handle_sonar(line)
                continue
            self.logger.info(f"[robot] {line}")
            self.response_queue.put(line)
        self._running = False
        with self._cond:
            self._cond.notify_all()

    def _handle_odometry(self, line):
        parts = line.split(',')
        if len(parts) < 3:
            self.logger.debug("Short odometry frame: %s", line)
            return
        try:
            x, y, theta = float(parts[0]), float(parts[1]), float(parts[2])
            stall = len(parts) > 3 and int(float(parts[3])) != 0
        except ValueError:
            self.logger.debug("Bad odometry frame: %s", line)
            return
        with self._cond:
            self._pose = (x, y, theta)
            self._stall = stall
            self._frames += 1
            self._cond.notify_all()

    def _handle_sonar(self, line):
        fields = line[len("SONAR"):].replace(',', ' ').split()
        if len(fields) != SONAR_COUNT:
            self.logger.warning(f"Sonar frame with {len(fields)} readings: {line}")
            return
        ranges = []
        for field in fields:
            try:
                r = float(field)
            except ValueError:
                r = math.nan
            ranges.append(r)
        with self._cond:
            self._ranges = ranges
            self._sonar_frames += 1
            self._cond.notify_all()

    # --- Robot interface ---
    def read_all(self, timeout=None):
        """Block until the next odometry frame. Returns False on timeout; raises LinkError if the link dropped."""
        with self._cond:
            seen = self._frames
            arrived = self._cond.wait_for(lambda: self._frames > seen or not self._running, timeout)
            if self._frames > seen:
                return True
        if not self._running:
            raise LinkError(f"Robot link {self.url} closed")
        return bool(arrived)

    def pose(self):
        with self._cond:
            return self._pose

    def stall(self):
        with self._cond:
            return self._stall

    def sonar_ready(self):
        with self._cond:
            return self._sonar_frames > 0

    def sonar_ranges(self):
        """Poll the sonar ring once; falls back to the last cached frame after sonar_timeout."""
        with self._cond:
            seen = self._sonar_frames
        self._send("GET_SONAR")
        with self._cond:
            if not self._cond.wait_for(lambda: self._sonar_frames > seen, self.sonar_timeout):
                self.logger.warning(f"No sonar reply within {self.sonar_timeout:.2f}s; using cached ranges")
            return list(self._ranges)

    def set_speed(self, linear, angular):
        self.logger.debug("SET_SPEED %.3f %.3f", linear, angular)
        self._send(f"SET_SPEED {linear:.4f} {angular:.4f}")

    def set_odometry(self, x, y, theta, ack_timeout=0.2):
        """Reset the robot odometry. Returns True/False on OK/ERR, None if the robot did not answer."""
        self._send(f"SET_ODOM {x:.4f} {y:.4f} {theta:.5f}")
        ok, line = self.wait_for_response(["OK SET_ODOM"], ["ERR"], ack_timeout)
        if ok is False:
            self.logger.warning(f"SET_ODOM rejected: {line}")
        return ok

    def wait_for_response(self, success_tokens, failure_tokens, timeout):
        deadline = time.time() + timeout
        while time.time() < deadline:
            remaining = deadline - time.time()
            if remaining <= 0:
                break
            try:
                line = self.response_queue.get(timeout=min(0.2, remaining))
            except queue.Empty:
                continue
            if any(line.startswith(tok) for tok in success_tokens):
                return True, line
            if any(line.startswith(tok) for tok in failure_tokens):
                return False, line
        return None, None
