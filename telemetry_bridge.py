import json
import logging
import threading
import time

from confluent_kafka import KafkaException, Producer

from robot_link import LinkError


class TelemetryBridge:
    """Kafka publisher for the external visualizer: pose status, road map, paths and goal events."""

    def __init__(self, robot_id, bootstrap, topics, status_period=1.0, heartbeat_period=10.0):
        self.logger = logging.getLogger("prm.telemetry")
        self.robot_id = robot_id
        self.bootstrap = bootstrap
        self.topics = topics
        self.status_period = status_period
        self.heartbeat_period = heartbeat_period

        self.producer = None
        self.running = False
        self.status_thread = None
        self.heartbeat_thread = None
        self._pose_source = None
        self._seq = 0
        self._seq_lock = threading.Lock()
        self._wake = threading.Event()

    def start(self, pose_source=None):
        """Connect the producer; `pose_source` (a callable returning a pose dict) feeds STATUS messages."""
        producer_conf = {
            "bootstrap.servers": self.bootstrap,
            "client.id": f"robot-{self.robot_id}",
            "enable.idempotence": True,
            "acks": "all",
        }
        try:
            self.producer = Producer(producer_conf)
        except KafkaException as exc:
            self.logger.error(f"Failed to start Kafka bridge: {exc}")
            return False

        self._wake.clear()
        self.running = True
        self._pose_source = pose_source
        if pose_source is not None:
            self.status_thread = threading.Thread(target=self._status_loop, daemon=True)
            self.status_thread.start()
        self.heartbeat_thread = threading.Thread(target=self._heartbeat_loop, daemon=True)
        self.heartbeat_thread.start()
        self.logger.info(f"Kafka bridge connected to {self.bootstrap}")
        return True

    def stop(self):
        self.running = False
        self._wake.set()
        if self.status_thread:
            self.status_thread.join(timeout=2)
        if self.heartbeat_thread:
            self.heartbeat_thread.join(timeout=2)
        if self.producer:
            remaining = self.producer.flush(1.0)
            if remaining:
                self.logger.warning(f"{remaining} telemetry messages not delivered")

    def _next_seq(self):
        with self._seq_lock:
            self._seq += 1
            return self._seq

    def send(self, topic, msg_type, payload=None, correlation_id=None):
        if self.producer is None:
            return
        envelope = {
            "robotId": self.robot_id,
            "msgType": msg_type,
            "correlationId": correlation_id or f"{int(time.time()*1000)}",
            "timestamp": int(time.time() * 1000),
            "seq": self._next_seq(),
            "payload": payload or {},
        }
        try:
            self.producer.produce(topic, key=self.robot_id, value=json.dumps(envelope))
            self.producer.poll(0)
        except BufferError:
            self.producer.poll(0.5)
            try:
                self.producer.produce(topic, key=self.robot_id, value=json.dumps(envelope))
            except BufferError:
                self.logger.warning(f"Kafka queue full, dropped {msg_type} message")
        except KafkaException as exc:
            self.logger.warning(f"Kafka send failed: {exc}")

    def send_status(self, pose):
        self.send(self.topics["telemetry"], "STATUS", {
            "x": pose['x'],
            "y": pose['y'],
            "theta": pose['theta'],
            "steps": pose.get('steps'),
            "totalDist": pose.get('total_dist'),
        })

    def send_map(self, grid_snapshot, roadmap_snapshot):
        self.send(self.topics["map"], "PRM_MAP", {"grid": grid_snapshot, "roadmap": roadmap_snapshot})

    def send_path(self, destination, indices, waypoints):
        self.send(self.topics["telemetry"], "PATH", {
            "destination": destination,
            "nodes": list(indices),
            "waypoints": [[x, y] for x, y in waypoints],
        })

    def send_goal_reached(self, destination, pose):
        self.send(self.topics["telemetry"], "GOAL_REACHED", {
            "destination": destination, "x": pose['x'], "y": pose['y'],
        })

    def send_replan(self, destination, attempt, node_index):
        self.send(self.topics["telemetry"], "REPLAN", {
            "destination": destination, "attempt": attempt, "node": node_index,
        })

    def send_heartbeat(self):
        self.send(self.topics["telemetry"], "HEARTBEAT", {})

    def _status_loop(self):
        while self.running:
            try:
                pose = self._pose_source()
            except LinkError as exc:
                self.logger.warning(f"Status loop stopped: {exc}")
                break
            self.send_status(pose)
            self._wake.wait(self.status_period)

    def _heartbeat_loop(self):
        while self.running:
            self.send_heartbeat()
            self._wake.wait(self.heartbeat_period)
