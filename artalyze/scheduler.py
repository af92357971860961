"""
Placement of new pairs into day buckets.

Two entry points share the capacity-safe ``puzzle_store.append_pair``:
an admin who names a date gets exactly that date or an error, while the
automated pipeline asks for the next day with room and is moved forward
when it loses a capacity race.
"""
from typing import Optional, Tuple

from sqlmodel import Session

from . import civil_day, models, puzzle_store
from .errors import CapacityExceeded, PastDate, SchedulingFailed
from .logging_utils import get_logger

logger = get_logger("artalyze.scheduler")

MAX_RACE_RETRIES = 5


def schedule_explicit(session: Session, date: str, pair: models.NewPair) -> models.PuzzleDay:
    """Append ``pair`` to the admin-chosen ``date``; never advances to another day."""
    civil_day.parse_key(date)
    today = civil_day.today_key()
    # ISO keys compare chronologically as strings
    if date < today:
        raise PastDate(f"cannot schedule {date}, today is {today}")
    day = puzzle_store.append_pair(session, date, pair)
    logger.info("pair_scheduled", extra={"day": date, "mode": "explicit"})
    return day


def schedule_next_available(
    session: Session,
    pair: models.NewPair,
    max_retries: int = MAX_RACE_RETRIES,
    start_key: Optional[str] = None,
    image_id: Optional[int] = None,
) -> Tuple[str, models.PuzzleDay]:
    """Place ``pair`` on the earliest day from today on that has room.

    A lost capacity race restarts the scan from the following day. After
    ``max_retries`` lost races SchedulingFailed is raised. ``image_id`` is
    handed to ``append_pair`` so the source image is consumed with the pair.
    """
    key = start_key or civil_day.today_key()
    for attempt in range(1, max_retries + 1):
        key = puzzle_store.find_day_with_spare_capacity(session, key)
        try:
            day = puzzle_store.append_pair(session, key, pair, image_id=image_id)
        except CapacityExceeded:
            logger.info("capacity_race_lost", extra={"day": key, "attempt": attempt})
            key = civil_day.shift_key(key, 1)
            continue
        logger.info("pair_scheduled", extra={"day": key, "mode": "next_available", "attempt": attempt})
        return key, day
    logger.warning("scheduling_failed", extra={"attempt": max_retries})
    raise SchedulingFailed(f"gave up after {max_retries} capacity races")
