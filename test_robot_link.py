"""
test_robot_link.py: line protocol of SerialRobotLink over pyserial's loop://
transport (everything written is read back by the reader thread).
"""

import threading
import unittest

from robot_link import LinkError, SerialRobotLink


class LinkTestCase(unittest.TestCase):

    def setUp(self):
        self.link = SerialRobotLink("loop://", sonar_timeout=0.5, range_max=5.0)
        self.link.connect()
        self.addCleanup(self.link.disconnect)

    def feed_later(self, text, delay=0.05):
        timer = threading.Timer(delay, self.link.serial_conn.write, args=[text.encode('utf-8')])
        timer.start()
        self.addCleanup(timer.cancel)


class TestOdometryFrames(LinkTestCase):

    def test_read_all_waits_for_frame(self):
        self.feed_later("1.5,-2.25,0.75,0\r\n")
        self.assertTrue(self.link.read_all(timeout=2.0))
        self.assertEqual(self.link.pose(), (1.5, -2.25, 0.75))
        self.assertFalse(self.link.stall())

    def test_stall_flag(self):
        self.feed_later("0.0,0.0,0.0,1\r\n")
        self.assertTrue(self.link.read_all(timeout=2.0))
        self.assertTrue(self.link.stall())

    def test_frame_without_stall_field(self):
        self.feed_later("-3.0,4.0,3.1\r\n")
        self.assertTrue(self.link.read_all(timeout=2.0))
        self.assertEqual(self.link.pose(), (-3.0, 4.0, 3.1))

    def test_read_all_times_out(self):
        self.assertFalse(self.link.read_all(timeout=0.1))

    def test_malformed_frame_ignored(self):
        self.feed_later("1.0,abc,2.0\r\n0.5,0.5,0.5\r\n")
        self.assertTrue(self.link.read_all(timeout=2.0))
        self.assertEqual(self.link.pose(), (0.5, 0.5, 0.5))


class TestSonar(LinkTestCase):

    def test_not_ready_until_reply(self):
        self.assertFalse(self.link.sonar_ready())

    def test_sonar_reply(self):
        self.feed_later("SONAR 0.5,1,1.5,2,2.5,3,3.5,4\r\n")
        ranges = self.link.sonar_ranges()
        self.assertEqual(ranges, [0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0])
        self.assertTrue(self.link.sonar_ready())

    def test_timeout_returns_cached(self):
        self.link.sonar_timeout = 0.1
        self.assertEqual(self.link.sonar_ranges(), [5.0] * 8)

    def test_short_sonar_frame_rejected(self):
        self.link.sonar_timeout = 0.2
        self.feed_later("SONAR 1,2,3\r\n")
        self.assertEqual(self.link.sonar_ranges(), [5.0] * 8)
        self.assertFalse(self.link.sonar_ready())


class TestCommands(LinkTestCase):

    def test_set_speed_line(self):
        self.link.set_speed(0.5, -0.25)
        ok, line = self.link.wait_for_response(["SET_SPEED"], ["ERR"], timeout=1.0)
        self.assertTrue(ok)
        self.assertEqual(line, "SET_SPEED 0.5000 -0.2500")

    def test_set_odometry_without_ack(self):
        self.assertIsNone(self.link.set_odometry(1.0, 2.0, 0.5, ack_timeout=0.1))

    def test_set_odometry_ack(self):
        self.feed_later("OK SET_ODOM\r\n", delay=0.02)
        self.assertTrue(self.link.set_odometry(1.0, 2.0, 0.5, ack_timeout=1.0))


class TestConnection(unittest.TestCase):

    def test_bad_url(self):
        link = SerialRobotLink("nosuchproto://robot")
        with self.assertRaises(LinkError):
            link.connect()

    def test_for_host_url(self):
        link = SerialRobotLink.for_host("localhost", 6665)
        self.assertEqual(link.url, "socket://localhost:6665")

    def test_read_after_disconnect(self):
        link = SerialRobotLink("loop://")
        link.connect()
        link.disconnect()
        self.assertFalse(link.connected)
        with self.assertRaises(LinkError):
            link.read_all(timeout=0.5)


if __name__ == "__main__":
    unittest.main(verbosity=2)
