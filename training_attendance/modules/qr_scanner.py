"""
QR Scanner Module - Training Attendance Tracker

Camera-side half of the attendance flow. The scanner samples camera frames
at a bounded rate, decodes QR codes inside a central detection window and
looks for attendance URLs (``.../scan?token=...&session=...``). Anything else
is ignored; a camera sees plenty of unrelated codes.

State machine::

    idle -> starting -> scanning -> processing -> success | failure -> idle

The camera is released before the decoded pair is submitted, so one device
can never submit twice for the same sighting. ``stop()`` is idempotent and
``close()`` never raises, which makes both safe from user actions and from
teardown paths.

The camera and the decoder are injectable. The defaults use OpenCV and
zxing-cpp, imported only when a scanner actually starts.
"""

import logging
import threading
import unicodedata
from contextlib import suppress
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from training_attendance.modules.exceptions import PermissionDeniedError
from training_attendance.modules.qr_generator import parse_attendance_url

CAMERA_ERROR_MESSAGE = 'Failed to access camera. Please ensure camera permissions are granted.'
SUBMIT_ERROR_MESSAGE = 'Unable to record attendance. Please try again.'


class ScannerState(str, Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    SCANNING = 'scanning'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    FAILURE = 'failure'


TERMINAL_STATES = (ScannerState.SUCCESS, ScannerState.FAILURE)
BUSY_STATES = (ScannerState.STARTING, ScannerState.SCANNING, ScannerState.PROCESSING)


def _decode_symbol_data(raw) -> str:
    if not raw:
        return ''

    if isinstance(raw, str):
        decoded = raw
    else:
        try:
            decoded = bytes(raw).decode('utf-8')
        except UnicodeDecodeError:
            decoded = bytes(raw).decode('utf-8', errors='ignore')

    return unicodedata.normalize('NFC', decoded).strip()


def crop_detection_window(frame, box: int):
    """Return the centred ``box`` x ``box`` region of a frame array."""
    shape = getattr(frame, 'shape', None)
    if not box or shape is None or len(shape) < 2:
        return frame

    height, width = shape[0], shape[1]
    if height <= box and width <= box:
        return frame

    top = max((height - box) // 2, 0)
    left = max((width - box) // 2, 0)
    return frame[top:top + box, left:left + box]


class OpenCVCamera:
    """Default camera: an OpenCV ``VideoCapture`` with explicit open/release."""

    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index
        self._capture = None
        self.logger = logging.getLogger(__name__)

    def open(self) -> None:
        try:
            import cv2
        except ImportError:
            raise PermissionDeniedError(
                'Missing camera support. Install OpenCV (opencv-python) to enable scanning.',
                reason='camera_unavailable'
            )

        backend_preferences = [getattr(cv2, 'CAP_DSHOW', None), getattr(cv2, 'CAP_ANY', None)]
        for backend in backend_preferences:
            if backend is None:
                capture = cv2.VideoCapture(self.camera_index)
            else:
                capture = cv2.VideoCapture(self.camera_index, backend)

            if capture.isOpened():
                self._capture = capture
                return

            capture.release()

        raise PermissionDeniedError(CAMERA_ERROR_MESSAGE)

    def read(self):
        if self._capture is None:
            return False, None
        return self._capture.read()

    def release(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            with suppress(Exception):
                capture.release()


def zxing_decoder(frame) -> List[str]:
    """Default decoder: every QR code text zxing-cpp finds in a frame."""
    import zxingcpp

    payloads = []
    for result in zxingcpp.read_barcodes(
        frame,
        formats=zxingcpp.BarcodeFormat.QRCode,
        try_rotate=True,
        try_downscale=True
    ):
        if hasattr(result, 'valid') and not result.valid:
            continue
        text = _decode_symbol_data(getattr(result, 'text', ''))
        if not text:
            text = _decode_symbol_data(getattr(result, 'bytes', b''))
        if text:
            payloads.append(text)
    return payloads


class QRScanner:
    """
    Single-camera attendance scanner.

    ``submit(token, session_id)`` is called once per successful sighting and
    must return ``{'success': bool, 'message': str}`` (or an object with
    ``to_dict()`` producing it).
    """

    def __init__(self, submit: Callable[[str, str], Any], camera_factory: Callable[[], Any] = None,
                 decoder: Callable[[Any], List[str]] = None, fps: float = 10,
                 detection_box: int = 250, camera_index: int = 0,
                 on_state_change: Callable[[ScannerState, Optional[Dict[str, Any]]], Any] = None):
        """
        Args:
            submit: Sends a decoded (token, session_id) pair to the recorder
            camera_factory: Returns an object with open()/read()/release()
            decoder: Returns the QR payload strings found in a frame
            fps (float): Frame sampling rate
            detection_box (int): Side of the central detection window in pixels
            camera_index (int): Device index for the default camera
            on_state_change: Called with (state, result) after every transition
        """
        self.submit = submit
        self.camera_factory = camera_factory or (lambda: OpenCVCamera(camera_index))
        self.decoder = decoder or zxing_decoder
        self.fps = fps
        self.detection_box = detection_box
        self.on_state_change = on_state_change
        self.logger = logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)
        self._stop_event = threading.Event()
        self._state = ScannerState.IDLE
        self._camera = None
        self._thread = None
        self._result: Optional[Dict[str, Any]] = None

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def result(self) -> Optional[Dict[str, Any]]:
        return self._result

    @property
    def is_running(self) -> bool:
        return self._state in BUSY_STATES

    def _set_state(self, state: ScannerState, result: Dict[str, Any] = None) -> None:
        self._transition(state, result)
        self._notify(state, result)

    def _transition(self, state: ScannerState, result: Dict[str, Any] = None) -> None:
        with self._lock:
            self._state = state
            if result is not None:
                self._result = result
            self._state_changed.notify_all()

    def _notify(self, state: ScannerState, result: Dict[str, Any] = None) -> None:
        if self.on_state_change:
            try:
                self.on_state_change(state, result)
            except Exception as e:
                self.logger.error(f"Scanner state callback failed: {str(e)}")

    def start(self) -> bool:
        """
        Open the camera and start scanning.

        The camera is opened without holding the scanner lock, so ``stop``
        may cancel a slow start; the start then returns False.

        Returns:
            bool: False if the camera could not be opened (state is failure)
        """
        with self._lock:
            if self._state in BUSY_STATES:
                return True
            self._result = None
            self._stop_event.clear()
            self._transition(ScannerState.STARTING)
        self._notify(ScannerState.STARTING)

        failure = None
        camera = self.camera_factory()
        try:
            camera.open()
        except PermissionDeniedError as e:
            failure = {'success': False, 'message': e.message, 'reason': e.reason}
            self.logger.warning(f"Camera unavailable: {e.message}")
        except Exception as e:
            failure = {'success': False, 'message': CAMERA_ERROR_MESSAGE, 'reason': 'permission_denied'}
            self.logger.error(f"Camera error: {str(e)}")

        with self._lock:
            cancelled = self._stop_event.is_set() or self._state != ScannerState.STARTING
            thread = None
            if failure is None and not cancelled:
                self._camera = camera
                thread = threading.Thread(target=self._run_loop, args=(camera,),
                                          name='qr-scanner', daemon=True)
                self._thread = thread
                self._transition(ScannerState.SCANNING)
            elif failure is not None and not cancelled:
                self._transition(ScannerState.FAILURE, failure)

        if thread is None:
            with suppress(Exception):
                camera.release()
            if failure is not None and not cancelled:
                self._notify(ScannerState.FAILURE, failure)
            return False

        self._notify(ScannerState.SCANNING)
        thread.start()
        return True

    def _run_loop(self, camera) -> None:
        interval = 1.0 / self.fps if self.fps else 0.1

        while not self._stop_event.is_set():
            try:
                ok, frame = camera.read()
            except Exception as e:
                self.logger.debug(f"Frame read failed: {str(e)}")
                ok, frame = False, None

            if ok and frame is not None:
                try:
                    payloads = self.decoder(crop_detection_window(frame, self.detection_box)) or []
                except Exception:
                    # Undecodable frames are the normal case
                    payloads = []

                for payload in payloads:
                    parsed = parse_attendance_url(_decode_symbol_data(payload))
                    if parsed is None:
                        continue
                    if self._begin_processing(camera):
                        self._process(*parsed)
                    return

            self._stop_event.wait(interval)

    def _begin_processing(self, camera) -> bool:
        with self._lock:
            if self._stop_event.is_set() or self._state != ScannerState.SCANNING:
                return False
            self._transition(ScannerState.PROCESSING)
            self._release_camera()
        self._notify(ScannerState.PROCESSING)
        return True

    def _process(self, token: str, session_id: str) -> None:
        try:
            verdict = self.submit(token, session_id)
            if hasattr(verdict, 'to_dict'):
                verdict = verdict.to_dict()
            verdict = dict(verdict or {})
            verdict.setdefault('success', False)
            verdict.setdefault('message', SUBMIT_ERROR_MESSAGE)
        except Exception as e:
            self.logger.error(f"Attendance submission failed: {str(e)}")
            verdict = {'success': False, 'message': SUBMIT_ERROR_MESSAGE}

        verdict['session_id'] = session_id
        state = ScannerState.SUCCESS if verdict['success'] else ScannerState.FAILURE
        self._set_state(state, verdict)
        self.logger.info(f"Scan for session {session_id}: {state.value} ({verdict['message']})")

    def _release_camera(self) -> None:
        camera, self._camera = self._camera, None
        if camera is not None:
            with suppress(Exception):
                camera.release()

    def stop(self, timeout: float = 2.0) -> None:
        """Stop scanning and release the camera. Safe to call at any time."""
        with self._lock:
            thread = self._thread
            scanning = self._state in (ScannerState.STARTING, ScannerState.SCANNING)
            self._stop_event.set()

        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)

        idle = False
        with self._lock:
            self._release_camera()
            if scanning and self._state in (ScannerState.STARTING, ScannerState.SCANNING):
                self._transition(ScannerState.IDLE)
                idle = True
            if self._thread is thread and (thread is None or not thread.is_alive()):
                self._thread = None
        if idle:
            self._notify(ScannerState.IDLE)

    def reset(self) -> None:
        """Stop if needed and return to idle, clearing the last verdict."""
        self.stop()
        idle = False
        with self._lock:
            if self._state != ScannerState.PROCESSING:
                self._result = None
                if self._state != ScannerState.IDLE:
                    self._transition(ScannerState.IDLE)
                    idle = True
        if idle:
            self._notify(ScannerState.IDLE)

    def restart(self) -> bool:
        self.reset()
        return self.start()

    def wait(self, timeout: float = None) -> ScannerState:
        """Block until the current attempt reaches success or failure."""
        with self._state_changed:
            self._state_changed.wait_for(
                lambda: self._state in TERMINAL_STATES or self._state == ScannerState.IDLE,
                timeout=timeout
            )
            return self._state

    def close(self) -> None:
        """Teardown hook: stop and release everything without raising."""
        try:
            self.stop()
        except Exception as e:
            self.logger.error(f"Error while closing scanner: {str(e)}")
        finally:
            with suppress(Exception):
                self._release_camera()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
