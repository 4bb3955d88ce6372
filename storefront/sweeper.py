from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import config
from .database import SessionLocal
from .logger import ErrorCode, log_error
from .reservations import sweep_stale_reservations

logger = logging.getLogger(__name__)


def sweep_once(session_factory: Callable[[], Session] = SessionLocal) -> int:
    db = session_factory()
    try:
        return sweep_stale_reservations(db)
    finally:
        db.close()


def start_sweeper_in_thread(
    interval_seconds: Optional[float] = None,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    stop_event: Optional[threading.Event] = None,
    daemon: bool = True,
) -> Optional[threading.Thread]:
    """Expire stale pending reservations every `interval_seconds`.

    Returns None without starting anything when the interval is not positive.
    """
    interval = config.get_sweep_interval_seconds() if interval_seconds is None else interval_seconds
    if interval <= 0:
        return None
    stop = stop_event or threading.Event()

    def _run() -> None:
        while not stop.wait(interval):
            try:
                count = sweep_once(session_factory)
                if count:
                    logger.info("Background sweep expired %s reservations", count)
            except Exception as e:
                log_error(ErrorCode.RESERVATION_SWEEP, type(e).__name__)

    t = threading.Thread(target=_run, name="reservation-sweeper", daemon=daemon)
    t.start()
    return t
