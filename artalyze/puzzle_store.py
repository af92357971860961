"""
Persistence for per-day puzzle buckets.

Each civil day owns at most one PuzzleDay row keyed by the UTC instant of
its local midnight. Buckets are created lazily on the first append and hold
at most MAX_PAIRS pairs; the capacity check and the increment happen in a
single conditional UPDATE so concurrent writers can never overflow a day.
"""
import datetime
import json
import uuid
from typing import List, Optional, Tuple, Union

from sqlalchemy import update, delete, func, select as sa_select
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, col

from . import civil_day, models
from .errors import CapacityExceeded, ImageAlreadyUsed, NoAvailableDay, NotFound
from .logging_utils import get_logger

logger = get_logger("artalyze.puzzle_store")

MAX_SCAN_DAYS = 365


def _invalidate(key: str) -> None:
    from .cache import invalidate_daily_puzzle
    invalidate_daily_puzzle(key)


def find_day(session: Session, day_range: Tuple[datetime.datetime, datetime.datetime]) -> Optional[models.PuzzleDay]:
    """Return the bucket whose scheduled_date falls in the half-open range."""
    start, end = (civil_day.to_storage(t) for t in day_range)
    return session.exec(
        select(models.PuzzleDay)
        .where(col(models.PuzzleDay.scheduled_date) >= start)
        .where(col(models.PuzzleDay.scheduled_date) < end)
        .order_by(models.PuzzleDay.scheduled_date)
    ).first()


def get_day(session: Session, key: str) -> Optional[models.PuzzleDay]:
    return find_day(session, civil_day.utc_range_for_day(key))


def require_day(session: Session, key: str) -> models.PuzzleDay:
    day = get_day(session, key)
    if day is None:
        raise NotFound(f"no puzzle scheduled for {key}")
    return day


def find_day_with_spare_capacity(
    session: Session,
    on_or_after: Union[str, datetime.datetime],
    max_scan: int = MAX_SCAN_DAYS,
) -> str:
    """Return the first day key at or after ``on_or_after`` with room for a pair.

    A day without a bucket counts as available. Raises NoAvailableDay when
    ``max_scan`` consecutive days are all full.
    """
    if isinstance(on_or_after, datetime.datetime):
        first_key = civil_day.key_for_instant(on_or_after)
    else:
        first_key = on_or_after
    last_key = civil_day.shift_key(first_key, max_scan)
    start = civil_day.to_storage(civil_day.canonical_day_instant(first_key))
    end = civil_day.to_storage(civil_day.canonical_day_instant(last_key))

    rows = session.execute(
        sa_select(models.PuzzleDay.day_key, models.PuzzleDay.pair_count)
        .where(col(models.PuzzleDay.scheduled_date) >= start)
        .where(col(models.PuzzleDay.scheduled_date) < end)
    ).all()
    counts = {k: n for k, n in rows}

    key = first_key
    for _ in range(max_scan):
        if counts.get(key, 0) < models.MAX_PAIRS:
            return key
        key = civil_day.shift_key(key, 1)
    raise NoAvailableDay(f"no day with spare capacity within {max_scan} days of {first_key}")


def _ensure_day(session: Session, key: str) -> int:
    day = get_day(session, key)
    if day is not None and day.id is not None:
        return day.id
    day = models.PuzzleDay(
        scheduled_date=civil_day.to_storage(civil_day.canonical_day_instant(key)),
        day_key=key,
    )
    session.add(day)
    try:
        session.commit()
        logger.info("puzzle_day_created", extra={"day": key})
    except IntegrityError:
        # another writer created the bucket first
        session.rollback()
    day = require_day(session, key)
    assert day.id is not None
    return day.id


def append_pair(session: Session, key: str, pair: models.NewPair,
                image_id: Optional[int] = None) -> models.PuzzleDay:
    """Create the bucket if needed and append ``pair``.

    Raises CapacityExceeded when the bucket is already full at write time.
    When ``image_id`` names a staged image it is marked used in the same
    commit as the pair; if it cannot be claimed nothing is written.
    """
    civil_day.parse_key(key)
    day_id = _ensure_day(session, key)

    res = session.execute(
        update(models.PuzzleDay)
        .where(col(models.PuzzleDay.id) == day_id)
        .where(col(models.PuzzleDay.pair_count) < models.MAX_PAIRS)
        .values(
            pair_count=models.PuzzleDay.pair_count + 1,
            next_position=models.PuzzleDay.next_position + 1,
            updated_at=models._utcnow(),
        )
    )
    if res.rowcount != 1:
        session.rollback()
        logger.info("capacity_exceeded", extra={"day": key})
        raise CapacityExceeded(f"puzzle for {key} already has {models.MAX_PAIRS} pairs")

    position = session.execute(
        sa_select(models.PuzzleDay.next_position).where(col(models.PuzzleDay.id) == day_id)
    ).scalar_one() - 1
    row = models.ImagePair(
        id=uuid.uuid4().hex,
        day_id=day_id,
        position=position,
        human_image_url=pair.human_image_url,
        ai_image_url=pair.ai_image_url,
        metadata_json=pair.metadata.model_dump_json(),
    )
    session.add(row)
    if image_id is not None:
        _claim_image(session, image_id)
    session.commit()
    _invalidate(key)
    logger.info("pair_appended", extra={"day": key, "pair_id": row.id})
    day = session.get(models.PuzzleDay, day_id)
    assert day is not None
    session.refresh(day)
    return day


def _require_pair(session: Session, day: models.PuzzleDay, pair_id: str) -> models.ImagePair:
    pair = session.get(models.ImagePair, pair_id)
    if pair is None or pair.day_id != day.id:
        raise NotFound(f"pair {pair_id} not found on {day.day_key}")
    return pair


def replace_pair(session: Session, key: str, pair_id: str, new_pair: models.NewPair) -> models.ImagePair:
    day = require_day(session, key)
    pair = _require_pair(session, day, pair_id)
    pair.human_image_url = new_pair.human_image_url
    pair.ai_image_url = new_pair.ai_image_url
    pair.metadata_json = new_pair.metadata.model_dump_json()
    day.updated_at = models._utcnow()
    session.add(pair)
    session.add(day)
    session.commit()
    session.refresh(pair)
    _invalidate(key)
    return pair


def remove_pair(session: Session, key: str, pair_id: str) -> models.PuzzleDay:
    day = require_day(session, key)
    pair = _require_pair(session, day, pair_id)
    session.delete(pair)
    session.execute(
        update(models.PuzzleDay)
        .where(col(models.PuzzleDay.id) == day.id)
        .values(pair_count=models.PuzzleDay.pair_count - 1, updated_at=models._utcnow())
    )
    session.commit()
    session.refresh(day)
    _invalidate(key)
    logger.info("pair_removed", extra={"day": key, "pair_id": pair_id})
    return day


def list_pairs(session: Session, day: models.PuzzleDay) -> List[models.ImagePair]:
    return list(session.exec(
        select(models.ImagePair)
        .where(models.ImagePair.day_id == day.id)
        .order_by(models.ImagePair.position)
    ).all())


def list_pairs_for_display(session: Session, key: str) -> List[dict]:
    """Player-facing projection: image URLs only, in display order."""
    day = get_day(session, key)
    if day is None:
        return []
    return [
        {"humanImageURL": p.human_image_url, "aiImageURL": p.ai_image_url}
        for p in list_pairs(session, day)
        if p.human_image_url and p.ai_image_url
    ]


def pair_metadata(pair: models.ImagePair) -> models.PairMetadata:
    try:
        return models.PairMetadata.model_validate(json.loads(pair.metadata_json or "{}"))
    except ValueError:
        return models.PairMetadata()


def serialize_day(session: Session, day: models.PuzzleDay) -> dict:
    """Admin projection of a bucket, identifiers and metadata included."""
    return {
        "id": day.id,
        "date": day.day_key,
        "scheduledDate": civil_day.from_storage(day.scheduled_date).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "status": day.status,
        "pairCount": day.pair_count,
        "pairs": [
            {
                "id": p.id,
                "humanImageURL": p.human_image_url,
                "aiImageURL": p.ai_image_url,
                "metadata": pair_metadata(p).model_dump(mode="json"),
            }
            for p in list_pairs(session, day)
        ],
    }


def set_status(session: Session, key: str, status: str) -> models.PuzzleDay:
    if status not in models.PUZZLE_STATUSES:
        raise ValueError(f"unknown status {status!r}")
    day = require_day(session, key)
    day.status = status
    day.updated_at = models._utcnow()
    session.add(day)
    session.commit()
    session.refresh(day)
    logger.info("puzzle_status_changed", extra={"day": key, "status": status})
    return day


def list_days(session: Session, from_key: str, limit: int = 14) -> List[models.PuzzleDay]:
    start = civil_day.to_storage(civil_day.canonical_day_instant(from_key))
    return list(session.exec(
        select(models.PuzzleDay)
        .where(col(models.PuzzleDay.scheduled_date) >= start)
        .order_by(models.PuzzleDay.scheduled_date)
        .limit(limit)
    ).all())


def delete_day(session: Session, key: str) -> None:
    day = require_day(session, key)
    session.execute(delete(models.ImagePair).where(col(models.ImagePair.day_id) == day.id))
    session.delete(day)
    session.commit()
    _invalidate(key)
    logger.info("puzzle_day_deleted", extra={"day": key})


def stage_pending_image(session: Session, url: str, public_id: str,
                        width: Optional[int] = None, height: Optional[int] = None) -> models.PendingImage:
    img = models.PendingImage(url=url, public_id=public_id, width=width, height=height)
    session.add(img)
    session.commit()
    session.refresh(img)
    return img


def oldest_unused_images(session: Session, limit: int = 5) -> List[models.PendingImage]:
    return list(session.exec(
        select(models.PendingImage)
        .where(models.PendingImage.used == False)  # noqa: E712
        .order_by(models.PendingImage.uploaded_at, models.PendingImage.id)
        .limit(limit)
    ).all())


def count_unused_images(session: Session) -> int:
    return session.execute(
        sa_select(func.count(models.PendingImage.id)).where(models.PendingImage.used == False)  # noqa: E712
    ).scalar() or 0


def _claim_image(session: Session, image_id: int) -> None:
    # flips used only while it is still false; the caller commits
    claimed = session.execute(
        update(models.PendingImage)
        .where(col(models.PendingImage.id) == image_id)
        .where(col(models.PendingImage.used) == False)  # noqa: E712
        .values(used=True, used_at=models._utcnow())
    )
    if claimed.rowcount != 1:
        session.rollback()
        if session.get(models.PendingImage, image_id) is None:
            raise NotFound(f"pending image {image_id} not found")
        raise ImageAlreadyUsed(f"pending image {image_id} is already scheduled")


def mark_image_used(session: Session, image_id: int) -> models.PendingImage:
    _claim_image(session, image_id)
    session.commit()
    img = session.get(models.PendingImage, image_id)
    assert img is not None
    session.refresh(img)
    return img
