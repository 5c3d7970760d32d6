"""
QR Code Generator Module - Training Attendance Tracker

This module issues the short-lived attendance tokens that trainers display
during a session and renders them as scannable QR codes. The payload is a
plain URL, ``<base_url>/scan?token=<token>&session=<session_id>``, so any
phone camera can open it and printed codes keep working across releases.

Features:
- Cryptographically random, session-bound attendance tokens
- Token refresh (the previous token is superseded immediately)
- Attendance URL building and parsing
- PNG rendering with high error correction, optional caption
"""

import qrcode
import io
import base64
import secrets
from PIL import Image, ImageDraw, ImageFont
from datetime import datetime, timedelta
from urllib.parse import urlencode, urlparse, parse_qs
import logging
from typing import Optional, Dict, Any, Tuple

from training_attendance.modules.exceptions import NotFoundError, InvalidStateError

SCAN_PATH = '/scan'

ERROR_CORRECTION_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,
    'M': qrcode.constants.ERROR_CORRECT_M,
    'Q': qrcode.constants.ERROR_CORRECT_Q,
    'H': qrcode.constants.ERROR_CORRECT_H
}


def build_attendance_url(token: str, session_id: str, base_url: str) -> str:
    """
    Build the attendance payload embedded in a session QR code.

    Args:
        token (str): Current attendance token of the session
        session_id (str): Session identifier
        base_url (str): Public base URL of the service

    Returns:
        str: ``<base_url>/scan?token=<token>&session=<session_id>``
    """
    query = urlencode({'token': token, 'session': session_id})
    return f"{base_url.rstrip('/')}{SCAN_PATH}?{query}"


def parse_attendance_url(payload: str) -> Optional[Tuple[str, str]]:
    """
    Extract ``(token, session_id)`` from a decoded QR payload.

    Returns None for anything that is not an absolute URL carrying both
    query parameters; cameras routinely see unrelated codes.
    """
    if not payload or not isinstance(payload, str):
        return None

    try:
        parsed = urlparse(payload.strip())
    except ValueError:
        return None

    if not parsed.scheme or not parsed.netloc:
        return None

    params = parse_qs(parsed.query)
    token = (params.get('token') or [''])[0]
    session_id = (params.get('session') or [''])[0]
    if not token or not session_id:
        return None
    return token, session_id


class QRGenerator:
    """
    Issues session attendance tokens and renders them as QR codes.
    """

    def __init__(self, database_manager, settings: Dict[str, Any] = None):
        """
        Initialize the QR code generator.

        Args:
            database_manager: Database manager instance
            settings (dict): Overrides for token and rendering settings
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

        self.default_settings = {
            'version': None,  # fit to payload
            'error_correction': qrcode.constants.ERROR_CORRECT_H,
            'box_size': 10,
            'border': 4,
            'fill_color': 'black',
            'back_color': 'white',
            'token_length': 32,
            'expiry_minutes': 240,
            'base_url': 'http://localhost:5000'
        }
        if settings:
            self.default_settings.update({k: v for k, v in settings.items() if v is not None})
        if isinstance(self.default_settings['error_correction'], str):
            self.default_settings['error_correction'] = ERROR_CORRECTION_LEVELS[
                self.default_settings['error_correction'].upper()
            ]

    def _generate_secure_token(self) -> str:
        return secrets.token_urlsafe(self.default_settings['token_length'])

    def issue_token(self, session_id: str, now: datetime = None) -> Dict[str, Any]:
        """
        Issue a fresh attendance token for an active session.

        Any previously issued token for the session stops matching as soon
        as this returns, even if its expiry has not passed.

        Args:
            session_id (str): Session identifier
            now (datetime): Issue time, defaults to the current time

        Returns:
            Dict[str, Any]: ``session_id``, ``token``, ``expires_at`` and ``url``

        Raises:
            NotFoundError: The session does not exist
            InvalidStateError: The session is not active
        """
        now = now or datetime.now()

        session = self.db.execute_query(
            "SELECT id, status FROM sessions WHERE id = ?",
            (session_id,),
            fetch_all=False
        )
        if not session:
            raise NotFoundError('Session not found.')
        if session['status'] != 'active':
            raise InvalidStateError('QR codes can only be issued for active sessions.')

        token = self._generate_secure_token()
        expires_at = now + timedelta(minutes=int(self.default_settings['expiry_minutes']))

        updated = self.db.execute_update(
            """UPDATE sessions
               SET qr_token = ?, qr_expires_at = ?, updated_at = CURRENT_TIMESTAMP
               WHERE id = ? AND status = 'active'""",
            (token, expires_at.isoformat(timespec='seconds'), session_id)
        )
        if not updated:
            # Session left the active state between the read and the write
            raise InvalidStateError('QR codes can only be issued for active sessions.')

        self.logger.info(f"Issued attendance token for session {session_id}, expires {expires_at.isoformat()}")

        return {
            'session_id': session_id,
            'token': token,
            'expires_at': expires_at.isoformat(timespec='seconds'),
            'url': self.build_url(token, session_id)
        }

    def get_current_token(self, session_id: str) -> Dict[str, Any]:
        """
        Return the token currently displayed for a session.

        Raises:
            NotFoundError: Unknown session, or no token issued yet
        """
        session = self.db.execute_query(
            "SELECT id, status, qr_token, qr_expires_at FROM sessions WHERE id = ?",
            (session_id,),
            fetch_all=False
        )
        if not session:
            raise NotFoundError('Session not found.')
        if not session['qr_token']:
            raise NotFoundError('No QR code has been issued for this session.')

        return {
            'session_id': session_id,
            'status': session['status'],
            'token': session['qr_token'],
            'expires_at': session['qr_expires_at'],
            'url': self.build_url(session['qr_token'], session_id)
        }

    def build_url(self, token: str, session_id: str, base_url: str = None) -> str:
        return build_attendance_url(token, session_id, base_url or self.default_settings['base_url'])

    def generate_qr_image(self, payload: str, caption: str = None,
                          custom_settings: dict = None) -> Dict[str, Any]:
        """
        Render a payload as a PNG QR code.

        Args:
            payload (str): Data to encode, normally an attendance URL
            caption (str): Optional text drawn under the code
            custom_settings (dict): Rendering overrides

        Returns:
            Dict[str, Any]: PNG bytes, base64 string and data URI
        """
        settings = self.default_settings.copy()
        if custom_settings:
            settings.update(custom_settings)

        qr = qrcode.QRCode(
            version=settings['version'],
            error_correction=settings['error_correction'],
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(payload)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        ).get_image().convert('RGB')

        if caption:
            img = self._add_caption(img, caption)

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        png_bytes = buffer.getvalue()
        img_base64 = base64.b64encode(png_bytes).decode()

        return {
            'success': True,
            'payload': payload,
            'png': png_bytes,
            'image_base64': img_base64,
            'data_uri': f"data:image/png;base64,{img_base64}",
            'size': img.size
        }

    def _add_caption(self, qr_img: Image.Image, caption: str) -> Image.Image:
        """Draw a centred caption below the QR code."""
        width, height = qr_img.size
        canvas = Image.new('RGB', (width, height + 40), 'white')
        canvas.paste(qr_img, (0, 0))

        draw = ImageDraw.Draw(canvas)
        font = ImageFont.load_default()

        bbox = draw.textbbox((0, 0), caption, font=font)
        text_width = bbox[2] - bbox[0]
        draw.text((max((width - text_width) // 2, 0), height + 12), caption,
                  fill='black', font=font)
        return canvas
