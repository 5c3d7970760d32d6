import threading

import numpy as np
import pytest

from training_attendance.modules.exceptions import PermissionDeniedError
from training_attendance.modules.qr_generator import build_attendance_url
from training_attendance.modules.qr_scanner import (
    CAMERA_ERROR_MESSAGE,
    SUBMIT_ERROR_MESSAGE,
    QRScanner,
    ScannerState,
    _decode_symbol_data,
    crop_detection_window,
)

ATTENDANCE_URL = build_attendance_url("tok123", "session-1", "https://attendance.example.com")


class FakeCamera:
    def __init__(self, frames=None, open_error=None, release_error=None):
        self.frames = list(frames or [])
        self.open_error = open_error
        self.release_error = release_error
        self.is_open = False
        self.release_count = 0

    def open(self):
        if self.open_error:
            raise self.open_error
        self.is_open = True

    def read(self):
        if self.frames:
            return True, self.frames.pop(0)
        return True, "blank"

    def release(self):
        self.release_count += 1
        self.is_open = False
        if self.release_error:
            raise self.release_error


def text_decoder(frame):
    return [] if frame == "blank" else [frame]


def make_scanner(camera, submit=None, decoder=text_decoder, **kwargs):
    calls = []

    def default_submit(token, session_id):
        calls.append((token, session_id, camera.is_open))
        return {"success": True, "message": "Attendance marked successfully."}

    scanner = QRScanner(
        submit or default_submit,
        camera_factory=lambda: camera,
        decoder=decoder,
        fps=200,
        **kwargs
    )
    return scanner, calls


def test_successful_scan_submits_once_with_camera_released():
    camera = FakeCamera(["https://example.com/menu", "WIFI:S:guest;;", ATTENDANCE_URL, ATTENDANCE_URL])
    scanner, calls = make_scanner(camera)

    assert scanner.start() is True
    assert scanner.wait(timeout=5) == ScannerState.SUCCESS

    assert calls == [("tok123", "session-1", False)]
    assert scanner.result == {
        "success": True,
        "message": "Attendance marked successfully.",
        "session_id": "session-1",
    }
    assert not scanner.is_running
    scanner.close()


def test_state_transitions_are_reported():
    camera = FakeCamera([ATTENDANCE_URL])
    states = []
    scanner, _ = make_scanner(camera, on_state_change=lambda state, result: states.append(state))

    scanner.start()
    scanner.wait(timeout=5)
    scanner.close()

    assert states == [
        ScannerState.STARTING,
        ScannerState.SCANNING,
        ScannerState.PROCESSING,
        ScannerState.SUCCESS,
    ]


def test_submit_verdict_object_is_converted():
    class Verdict:
        def to_dict(self):
            return {"success": False, "message": "QR code is outdated. Please refresh."}

    camera = FakeCamera([ATTENDANCE_URL])
    scanner, _ = make_scanner(camera, submit=lambda token, session_id: Verdict())

    scanner.start()

    assert scanner.wait(timeout=5) == ScannerState.FAILURE
    assert scanner.result["message"] == "QR code is outdated. Please refresh."
    scanner.close()


def test_submit_error_reports_generic_failure():
    def failing_submit(token, session_id):
        raise ConnectionError("server down")

    camera = FakeCamera([ATTENDANCE_URL])
    scanner, _ = make_scanner(camera, submit=failing_submit)

    scanner.start()

    assert scanner.wait(timeout=5) == ScannerState.FAILURE
    assert scanner.result["message"] == SUBMIT_ERROR_MESSAGE
    assert scanner.result["success"] is False
    scanner.close()


def test_camera_permission_failure():
    camera = FakeCamera(open_error=PermissionDeniedError(CAMERA_ERROR_MESSAGE))
    scanner, calls = make_scanner(camera)

    assert scanner.start() is False
    assert scanner.state == ScannerState.FAILURE
    assert scanner.result["message"] == CAMERA_ERROR_MESSAGE
    assert scanner.result["reason"] == "permission_denied"
    assert calls == []
    assert camera.release_count == 1


def test_unexpected_camera_error_uses_permission_message():
    camera = FakeCamera(open_error=OSError("device busy"))
    scanner, _ = make_scanner(camera)

    assert scanner.start() is False
    assert scanner.result["message"] == CAMERA_ERROR_MESSAGE
    assert camera.release_count == 1


class SlowCamera(FakeCamera):
    def __init__(self):
        super().__init__()
        self.opening = threading.Event()
        self.proceed = threading.Event()

    def open(self):
        self.opening.set()
        self.proceed.wait(timeout=5)
        super().open()


def test_stop_does_not_wait_for_a_slow_camera_open():
    camera = SlowCamera()
    scanner, calls = make_scanner(camera)
    started = []
    starter = threading.Thread(target=lambda: started.append(scanner.start()))
    starter.start()
    assert camera.opening.wait(timeout=5)

    stopper = threading.Thread(target=scanner.stop)
    stopper.start()
    stopper.join(timeout=2)
    stopped_while_opening = not stopper.is_alive()
    camera.proceed.set()
    starter.join(timeout=5)

    assert stopped_while_opening
    assert started == [False]
    assert scanner.state == ScannerState.IDLE
    assert camera.release_count == 1
    assert calls == []


def test_decoder_errors_are_ignored():
    attempts = []

    def flaky_decoder(frame):
        attempts.append(frame)
        if len(attempts) == 1:
            raise ValueError("corrupt frame")
        return text_decoder(frame)

    camera = FakeCamera(["garbage", ATTENDANCE_URL])
    scanner, calls = make_scanner(camera, decoder=flaky_decoder)

    scanner.start()

    assert scanner.wait(timeout=5) == ScannerState.SUCCESS
    assert len(calls) == 1
    scanner.close()


def test_stop_before_start_and_twice():
    camera = FakeCamera()
    scanner, _ = make_scanner(camera)

    scanner.stop()
    assert scanner.state == ScannerState.IDLE

    scanner.start()
    assert scanner.state == ScannerState.SCANNING
    scanner.stop()
    scanner.stop()

    assert scanner.state == ScannerState.IDLE
    assert not camera.is_open
    assert camera.release_count == 1


def test_start_while_scanning_is_a_no_op():
    opened = []

    def factory():
        camera = FakeCamera()
        opened.append(camera)
        return camera

    scanner = QRScanner(lambda token, session_id: {"success": True}, camera_factory=factory,
                        decoder=text_decoder, fps=200)

    assert scanner.start() is True
    assert scanner.start() is True
    assert len(opened) == 1
    scanner.close()


def test_reset_and_restart_after_success():
    cameras = [FakeCamera([ATTENDANCE_URL]), FakeCamera([ATTENDANCE_URL])]
    submitted = []

    def submit(token, session_id):
        submitted.append(session_id)
        return {"success": True, "message": "ok"}

    scanner = QRScanner(submit, camera_factory=lambda: cameras.pop(0), decoder=text_decoder, fps=200)

    scanner.start()
    scanner.wait(timeout=5)
    scanner.reset()
    assert scanner.state == ScannerState.IDLE
    assert scanner.result is None

    assert scanner.restart() is True
    assert scanner.wait(timeout=5) == ScannerState.SUCCESS
    assert submitted == ["session-1", "session-1"]
    scanner.close()


def test_close_never_raises():
    camera = FakeCamera(release_error=RuntimeError("driver crashed"))
    scanner, _ = make_scanner(camera)

    with scanner:
        scanner.start()

    assert scanner.state == ScannerState.IDLE


def test_stop_from_state_callback_thread_does_not_deadlock():
    camera = FakeCamera([ATTENDANCE_URL])
    finished = threading.Event()

    def on_state_change(state, result):
        if state == ScannerState.SUCCESS:
            scanner.stop()
            finished.set()

    scanner, _ = make_scanner(camera, on_state_change=on_state_change)
    scanner.start()

    assert finished.wait(timeout=5)
    scanner.close()


def test_crop_detection_window():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)

    assert crop_detection_window(frame, 250).shape == (250, 250, 3)
    small = np.zeros((200, 200), dtype=np.uint8)
    assert crop_detection_window(small, 250) is small
    assert crop_detection_window("not-an-array", 250) == "not-an-array"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("  https://example.com/scan  ", "https://example.com/scan"),
        (b"https://example.com/scan", "https://example.com/scan"),
        ("Café", "Café"),
        (None, ""),
    ],
)
def test_decode_symbol_data(raw, expected):
    assert _decode_symbol_data(raw) == expected
