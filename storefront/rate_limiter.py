"""IP-based attempt limiting backed by a database table.

Client IPs are stored as HMAC digests, never in the clear.
"""
from __future__ import annotations

import datetime as dt
import hashlib
import hmac
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import config
from .models import CheckoutAttempt, utcnow


def _aware(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def hash_ip(ip: str) -> str:
    key = config.get_rate_limit_secret().encode("utf-8")
    return hmac.new(key, ip.encode("utf-8"), hashlib.sha256).hexdigest()


class RateLimiter:
    def __init__(
        self,
        max_attempts: Callable[[], int],
        lockout_minutes: Callable[[], int],
    ):
        self._max_attempts = max_attempts
        self._lockout_minutes = lockout_minutes

    @property
    def window(self) -> dt.timedelta:
        return dt.timedelta(minutes=self._lockout_minutes())

    def purge_expired(self, db: Session, *, now: Optional[dt.datetime] = None) -> int:
        """Drop rows whose lockout or counting window has passed."""
        now = now or utcnow()
        cutoff = now - self.window
        count = (
            db.query(CheckoutAttempt)
            .filter(
                ((CheckoutAttempt.locked_until.isnot(None)) & (CheckoutAttempt.locked_until <= now))
                | ((CheckoutAttempt.locked_until.is_(None)) & (CheckoutAttempt.first_attempt_at <= cutoff))
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return int(count or 0)

    def is_rate_limited(self, db: Session, ip: str, *, now: Optional[dt.datetime] = None) -> bool:
        now = now or utcnow()
        row = db.get(CheckoutAttempt, hash_ip(ip))
        if row is None:
            return False
        locked_until = _aware(row.locked_until)
        if locked_until is not None and locked_until > now:
            return True
        if locked_until is not None:
            db.delete(row)
            db.commit()
        return False

    def record_attempt(self, db: Session, ip: str, *, now: Optional[dt.datetime] = None) -> bool:
        """Count an attempt; True if the IP is now locked out."""
        now = now or utcnow()
        self.purge_expired(db, now=now)
        try:
            hashed = hash_ip(ip)
            row = db.get(CheckoutAttempt, hashed)
            if row is None:
                row = CheckoutAttempt(ip=hashed, attempts=0, first_attempt_at=now)
                db.add(row)
            elif _aware(row.first_attempt_at) <= now - self.window:
                row.attempts = 0
                row.first_attempt_at = now
                row.locked_until = None

            row.attempts += 1
            locked = row.attempts >= self._max_attempts()
            if locked:
                row.locked_until = now + self.window
            db.commit()
            return locked
        except Exception:
            db.rollback()
            raise

    def clear_attempts(self, db: Session, ip: str) -> None:
        db.query(CheckoutAttempt).filter(CheckoutAttempt.ip == hash_ip(ip)).delete(
            synchronize_session=False
        )
        db.commit()


checkout_limiter = RateLimiter(config.get_checkout_max_attempts, config.get_checkout_lockout_minutes)
