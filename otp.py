"""
Simulated phone OTP verification.

No SMS provider is wired in. Codes live in a process-local cache and expire;
the code is handed back to the caller only in demo mode. There is no
universal test code.
"""

import logging
import re
import secrets
import threading
import time
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

OTP_LENGTH = 6


class OtpError(ValueError):
    pass


def format_phone_number(phone: str) -> Optional[str]:
    """Normalize to E.164; bare 10-digit numbers are taken as Indian (+91)."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None
    if digits.startswith("91") and len(digits) >= 12:
        return f"+{digits[:12]}"
    if len(digits) == 10:
        return f"+91{digits}"
    if len(digits) > 10:
        return f"+91{digits[-10:]}"
    return phone if phone.startswith("+") else f"+{digits}"


class _Pending:
    __slots__ = ("code", "expires_at", "attempts")

    def __init__(self, code: str, expires_at: float):
        self.code = code
        self.expires_at = expires_at
        self.attempts = 0


class OtpService:
    def __init__(self, expiry_seconds: int = 120, resend_interval: int = 60, max_attempts: int = 5,
                 clock=time.monotonic):
        self.expiry_seconds = expiry_seconds
        self.resend_interval = resend_interval
        self.max_attempts = max_attempts
        self._clock = clock
        self._pending: Dict[str, _Pending] = {}
        self._last_issued: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        for number in [n for n, p in self._pending.items() if p.expires_at < now]:
            del self._pending[number]
        for number in [n for n, t in self._last_issued.items() if now - t >= self.resend_interval]:
            del self._last_issued[number]

    def issue(self, phone: str) -> Tuple[str, str]:
        """Create a code for `phone`; returns (normalized phone, code)."""
        number = format_phone_number(phone)
        if number is None:
            raise OtpError("Invalid phone number format")
        code = f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"
        with self._lock:
            now = self._clock()
            self._purge(now)
            if number in self._last_issued:
                wait = int(self.resend_interval - (now - self._last_issued[number])) + 1
                raise OtpError(f"Please wait {wait}s before requesting a new OTP.")
            self._pending[number] = _Pending(code, now + self.expiry_seconds)
            self._last_issued[number] = now
        logger.info("OTP issued for %s", number)
        return number, code

    def verify(self, phone: str, code: str) -> bool:
        number = format_phone_number(phone)
        if number is None:
            raise OtpError("Invalid phone number format")
        with self._lock:
            entry = self._pending.get(number)
            if entry is None:
                raise OtpError("Verification session not found. Please request a new OTP.")
            if self._clock() > entry.expires_at:
                del self._pending[number]
                raise OtpError("OTP has expired. Please request a new OTP.")
            if not secrets.compare_digest(entry.code, code):
                entry.attempts += 1
                if entry.attempts >= self.max_attempts:
                    del self._pending[number]
                    logger.warning("OTP for %s dropped after %d failed attempts", number, entry.attempts)
                else:
                    logger.warning("Invalid OTP for %s", number)
                return False
            del self._pending[number]
        logger.info("OTP verified for %s", number)
        return True
