"""Math CAPTCHA challenges kept in a keyed store with expiry."""
import logging
import random
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class CaptchaStore:
    """Process-wide challenge store owned by the app (`app.state.captcha_store`).

    Each challenge expires after `ttl_seconds` and can be verified once.
    Expired entries are purged whenever a new challenge is generated;
    `clear()` drops everything on shutdown.
    """

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._challenges: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._challenges)

    def generate(self) -> Tuple[str, str]:
        op = random.choice(["+", "-", "×"])
        if op == "+":
            a, b = random.randint(1, 50), random.randint(1, 50)
            answer = a + b
        elif op == "-":
            a = random.randint(10, 59)
            b = random.randint(0, a - 1)
            answer = a - b
        else:
            a, b = random.randint(1, 12), random.randint(1, 12)
            answer = a * b

        captcha_id = secrets.token_hex(16)
        with self._lock:
            self._purge_expired()
            self._challenges[captcha_id] = (answer, self._clock() + self.ttl_seconds)
        return captcha_id, f"What is {a} {op} {b}?"

    def verify(self, captcha_id: Optional[str], answer) -> bool:
        if not captcha_id or answer is None:
            return False
        with self._lock:
            challenge = self._challenges.pop(captcha_id, None)
        if challenge is None:
            return False
        expected, expires_at = challenge
        if self._clock() > expires_at:
            return False
        try:
            return int(str(answer).strip()) == expected
        except ValueError:
            return False

    def clear(self):
        with self._lock:
            self._challenges.clear()

    def _purge_expired(self):
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._challenges.items() if now > expires_at]
        for key in expired:
            del self._challenges[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired captcha challenge(s)")
