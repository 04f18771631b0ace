from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from io import BytesIO
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.constants import ERROR_CORRECT_L
from qrcode.image.pil import PilImage

from credkeep.logging import get_logger

logger = get_logger(__name__)

SECRET_BYTES = 32
DIGITS = 6
PERIOD_SECONDS = 30
# adjacent steps accepted for clock skew
SKEW_STEPS = 1


class TotpVerifier:
    """RFC 6238 TOTP (HMAC-SHA1, 6 digits, 30 second steps).

    Stateless given a secret: provisioning and verification only need the
    base32 secret the caller stored for the user.
    """

    def __init__(self, issuer: str) -> None:
        self.issuer = issuer

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, email: str) -> str:
        """Build the ``otpauth://`` URI authenticator apps scan from a QR code."""
        label = quote(f"{self.issuer}:{email}", safe="@:")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": DIGITS,
                "period": PERIOD_SECONDS,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    @staticmethod
    def qr_data_uri(uri: str) -> str:
        """Render ``uri`` as a PNG QR code inlined in a ``data:image/png;base64`` URI."""
        qr = qrcode.QRCode(error_correction=ERROR_CORRECT_L, box_size=10, border=4)
        qr.add_data(uri)
        qr.make(fit=True)
        buffer = BytesIO()
        image = qr.make_image(image_factory=PilImage, fill_color="black", back_color="white")
        image.save(buffer)
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")

    def verify(self, secret: str, code: Optional[str], *, at: Optional[float] = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != DIGITS or not (code.isascii() and code.isdigit()):
            return False
        key = self._decode_secret(secret)
        if key is None:
            return False
        now = time.time() if at is None else at
        counter = int(now // PERIOD_SECONDS)
        matched = False
        # Every step is checked so timing does not reveal which one matched
        for offset in range(-SKEW_STEPS, SKEW_STEPS + 1):
            candidate = self._code_for_counter(key, counter + offset)
            if hmac.compare_digest(candidate, code):
                matched = True
        return matched

    def generate_code(self, secret: str, *, at: Optional[float] = None) -> str:
        key = self._decode_secret(secret)
        if key is None:
            raise ValueError("invalid TOTP secret")
        now = time.time() if at is None else at
        return self._code_for_counter(key, int(now // PERIOD_SECONDS))

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        normalized = secret.strip().replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return None

    @staticmethod
    def _code_for_counter(key: bytes, counter: int) -> str:
        digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**DIGITS
        )
        return str(code_int).zfill(DIGITS)
