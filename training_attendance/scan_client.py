"""
Command line scanner for participants.

Logs in to a Training Attendance Tracker server, opens the local camera and
submits the first attendance QR code it sees to ``/api/attendance/mark``.

Usage::

    attendance-scan --server http://localhost:5000 --email me@example.com
"""

import argparse
import getpass
import logging
import sys
from typing import Any, Dict
from urllib.parse import urljoin

import requests

from config import Config
from training_attendance.modules.qr_scanner import QRScanner, ScannerState

logger = logging.getLogger(__name__)


class AttendanceAPIClient:
    """Thin JSON client for the attendance API, keeping the login cookie."""

    def __init__(self, base_url: str, timeout: float = None):
        self.base_url = base_url.rstrip('/') + '/'
        self.timeout = timeout or Config.API_TIMEOUT
        self.session = requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = urljoin(self.base_url, path.lstrip('/'))
        response = self.session.post(url, json=payload, timeout=self.timeout)
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        # Domain rejections come back as JSON with success=false
        if not response.ok and not (isinstance(body, dict) and 'message' in body):
            response.raise_for_status()
        return body

    def login(self, email: str, password: str) -> Dict[str, Any]:
        result = self._post('/api/auth/login', {'email': email, 'password': password})
        if not result.get('success'):
            raise PermissionError(result.get('message', 'Login failed'))
        return result

    def mark_attendance(self, token: str, session_id: str) -> Dict[str, Any]:
        """
        Submit a scanned token.

        Returns:
            Dict[str, Any]: ``{success, message}`` as answered by the server
        """
        try:
            return self._post('/api/attendance/mark', {'token': token, 'session': session_id})
        except requests.RequestException as e:
            logger.error(f"Attendance request failed: {str(e)}")
            return {'success': False, 'message': 'Unable to reach the attendance server.'}

    def close(self) -> None:
        self.session.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='attendance-scan',
        description='Scan a session QR code with the local camera and record attendance.'
    )
    parser.add_argument('--server', default=Config.BASE_URL, help='Attendance server base URL')
    parser.add_argument('--email', required=True, help='Participant email')
    parser.add_argument('--password', help='Participant password (prompted if omitted)')
    parser.add_argument('--camera', type=int, default=Config.SCANNER_CAMERA_INDEX, help='Camera device index')
    parser.add_argument('--fps', type=float, default=Config.SCANNER_FPS, help='Frames sampled per second')
    parser.add_argument('--timeout', type=float, default=120, help='Seconds to wait for a QR code')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s: %(message)s'
    )

    client = AttendanceAPIClient(args.server)
    try:
        client.login(args.email, args.password or getpass.getpass('Password: '))
    except (PermissionError, requests.RequestException) as e:
        print(f"Login failed: {e}", file=sys.stderr)
        client.close()
        return 1

    scanner = QRScanner(
        client.mark_attendance,
        camera_index=args.camera,
        fps=args.fps,
        detection_box=Config.SCANNER_DETECTION_BOX
    )
    try:
        if not scanner.start():
            print(scanner.result['message'], file=sys.stderr)
            return 1

        print('Point the camera at the session QR code...')
        state = scanner.wait(timeout=args.timeout)
        if state not in (ScannerState.SUCCESS, ScannerState.FAILURE):
            print('No attendance QR code detected.', file=sys.stderr)
            return 2

        print(scanner.result['message'])
        return 0 if state == ScannerState.SUCCESS else 1
    finally:
        scanner.close()
        client.close()


if __name__ == '__main__':
    sys.exit(main())
