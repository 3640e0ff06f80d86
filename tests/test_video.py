"""Unit tests for the video capture supervisor with fake capture handles."""
import os
import threading
import unittest
from unittest import mock

import cv2
import numpy as np

from activity_capture.video import LOCAL_CAMERA_KEY, VideoCaptureSupervisor, open_video_capture, rtsp_source_key
from tests.fakes import FakeCapture, FakeCaptureFactory, Recorder, bgr_frame, make_config, wait_for

URL = "rtsp://cam.local:554/stream1"
OTHER_URL = "rtsp://cam.local:554/stream2"

# long cadences so the periodic tasks stay out of the way of direct calls
SLOW_RTSP = {"enabled": True, "urls": [URL], "capture_interval_ms": 600000, "reconnect_delay_ms": 600000}


class TestSourceKey(unittest.TestCase):

    def test_key_is_stable_per_url(self):
        self.assertEqual(rtsp_source_key(URL), rtsp_source_key(URL))
        self.assertTrue(rtsp_source_key(URL).startswith("rtsp_"))
        self.assertNotEqual(rtsp_source_key(URL), rtsp_source_key(URL + "x"))


class TestVideoCaptureSupervisor(unittest.TestCase):

    def tearDown(self):
        if getattr(self, "supervisor", None):
            self.supervisor.stop()

    def _supervisor(self, factory, **capture):
        self.supervisor = VideoCaptureSupervisor(make_config(capture=capture), capture_factory=factory)
        return self.supervisor

    def test_no_sources_configured(self):
        sup = self._supervisor(FakeCaptureFactory())
        sup.start()
        self.assertTrue(sup.is_capturing())
        self.assertEqual(sup.active_source_count(), 0)
        self.assertEqual(sup.active_sources(), [])

    def test_camera_frames_reach_listeners_as_rgb(self):
        factory = FakeCaptureFactory({0: [FakeCapture(frame=bgr_frame(b=10, g=20, r=200))]})
        sup = self._supervisor(factory, camera={"enabled": True, "device_id": 0, "fps": 30})
        frames = Recorder()
        sup.add_frame_listener(frames)
        sup.start()
        self.assertEqual(sup.active_sources(), [LOCAL_CAMERA_KEY])
        self.assertTrue(frames.wait(2))
        np.testing.assert_array_equal(frames.calls[0][0, 0], [200, 20, 10])

    def test_camera_that_does_not_open_is_skipped(self):
        factory = FakeCaptureFactory({0: [FakeCapture(opened=False)]})
        sup = self._supervisor(factory, camera={"enabled": True})
        with self.assertLogs("activity_capture.video", level="ERROR"):
            sup.start()
        self.assertTrue(sup.is_capturing())
        self.assertEqual(sup.configured_sources(), [])

    def test_grab_failure_is_swallowed(self):
        bad = FakeCapture(fail=True)
        sup = self._supervisor(FakeCaptureFactory({URL: [bad]}), rtsp=SLOW_RTSP)
        sup.start()
        source = sup.get_source(rtsp_source_key(URL))
        frames = Recorder()
        sup.add_frame_listener(frames)
        self.assertFalse(sup._capture_frame(source))
        self.assertGreaterEqual(source.failures, 1)
        self.assertEqual(frames.calls, [])
        self.assertTrue(sup.is_capturing())

    def test_failed_probe_reconnects_once_with_same_key(self):
        factory = FakeCaptureFactory({URL: [FakeCapture(fail=True), FakeCapture()]})
        sup = self._supervisor(factory, rtsp=SLOW_RTSP)
        sup.start()
        key = rtsp_source_key(URL)
        source = sup.get_source(key)
        first = source.handle

        with self.assertLogs("activity_capture.video", level="WARNING"):
            self.assertTrue(sup._check_and_reconnect(source))
        self.assertTrue(first.released)
        self.assertEqual(factory.calls_for(URL), 2)
        self.assertEqual(source.reconnects, 1)
        self.assertIs(sup.get_source(key), source)
        self.assertEqual(sup.active_sources(), [key])

        # healthy now: the probe succeeds and nothing is reopened
        self.assertFalse(sup._check_and_reconnect(source))
        self.assertEqual(factory.calls_for(URL), 2)
        self.assertTrue(sup._capture_frame(source))

    def test_unreachable_stream_stays_configured_and_is_retried(self):
        factory = FakeCaptureFactory({URL: [FakeCapture(opened=False), FakeCapture()]})
        sup = self._supervisor(factory, rtsp=SLOW_RTSP)
        with self.assertLogs("activity_capture.video", level="ERROR"):
            sup.start()
        key = rtsp_source_key(URL)
        self.assertEqual(sup.configured_sources(), [key])
        self.assertEqual(sup.active_sources(), [])
        sup._check_and_reconnect(sup.get_source(key))
        self.assertEqual(sup.active_sources(), [key])

    def test_duplicate_url_registers_one_source(self):
        rtsp = dict(SLOW_RTSP, urls=[URL, URL])
        factory = FakeCaptureFactory()
        sup = self._supervisor(factory, rtsp=rtsp)
        with self.assertLogs("activity_capture.video", level="WARNING"):
            sup.start()
        self.assertEqual(sup.active_sources(), [rtsp_source_key(URL)])
        self.assertEqual(factory.calls_for(URL), 1)

    def test_rtsp_timeout_passed_to_factory(self):
        factory = FakeCaptureFactory()
        sup = self._supervisor(factory, rtsp=dict(SLOW_RTSP, timeout_ms=1234))
        sup.start()
        self.assertEqual(factory.calls[0], (URL, 1234))

    def test_stop_releases_everything(self):
        factory = FakeCaptureFactory()
        sup = self._supervisor(factory, camera={"enabled": True}, rtsp=SLOW_RTSP)
        sup.start()
        self.assertEqual(sup.active_source_count(), 2)
        sup.stop()
        self.assertFalse(sup.is_capturing())
        self.assertTrue(all(h.released for h in factory.created))
        self.assertEqual(sup.configured_sources(), [])
        sup.stop()

    def test_slow_reconnect_does_not_stall_other_sources(self):
        factory = ReopenBlockingFactory(URL, {URL: [FakeCapture(fail=True), FakeCapture()]})
        rtsp = dict(SLOW_RTSP, urls=[URL, OTHER_URL], capture_interval_ms=10)
        sup = self._supervisor(factory, rtsp=rtsp)
        sup.start()
        stuck = sup.get_source(rtsp_source_key(URL))
        other = sup.get_source(rtsp_source_key(OTHER_URL))
        reconnect = threading.Thread(target=sup._check_and_reconnect, args=(stuck,), daemon=True)
        try:
            reconnect.start()
            self.assertTrue(factory.reopening.wait(2))
            before = other.frames
            self.assertTrue(wait_for(lambda: other.frames >= before + 3))
            self.assertTrue(reconnect.is_alive())
        finally:
            factory.release.set()
            reconnect.join(2)
        self.assertEqual(stuck.reconnects, 1)
        self.assertTrue(stuck.connected)


class ReopenBlockingFactory(FakeCaptureFactory):
    """Blocks any reopen of block_target until release is set."""

    def __init__(self, block_target, handles) -> None:
        super().__init__(handles)
        self.block_target = block_target
        self.reopening = threading.Event()
        self.release = threading.Event()

    def __call__(self, target, timeout_ms=None):
        if target == self.block_target and self.calls_for(target) >= 1:
            self.reopening.set()
            self.release.wait(5)
        return super().__call__(target, timeout_ms)


class TestOpenVideoCapture(unittest.TestCase):

    @unittest.skipUnless(hasattr(cv2, "CAP_PROP_OPEN_TIMEOUT_MSEC") and hasattr(cv2, "CAP_PROP_READ_TIMEOUT_MSEC"),
                         "OpenCV build without capture timeouts")
    @mock.patch.dict(os.environ)
    @mock.patch("activity_capture.video.cv2.VideoCapture")
    def test_rtsp_timeouts_are_passed_at_open(self, video_capture):
        cap = video_capture.return_value
        cap.isOpened.return_value = True
        self.assertIs(open_video_capture(URL, timeout_ms=1500), cap)
        video_capture.assert_called_once_with(
            URL, cv2.CAP_FFMPEG,
            [cv2.CAP_PROP_OPEN_TIMEOUT_MSEC, 1500, cv2.CAP_PROP_READ_TIMEOUT_MSEC, 1500],
        )
        props = [c.args[0] for c in cap.set.call_args_list]
        self.assertEqual(props, [cv2.CAP_PROP_BUFFERSIZE])
        self.assertIn("OPENCV_FFMPEG_CAPTURE_OPTIONS", os.environ)

    @mock.patch.dict(os.environ)
    @mock.patch("activity_capture.video.cv2.VideoCapture")
    def test_rtsp_without_timeout_uses_plain_open(self, video_capture):
        video_capture.return_value.isOpened.return_value = True
        open_video_capture(URL)
        video_capture.assert_called_once_with(URL)


if __name__ == "__main__":
    unittest.main()
