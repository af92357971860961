"""
Per-player streaks, tries and in-progress selections.

Nothing here runs at midnight. Every operation asks civil_day for today
and yesterday and repairs stale state when it reads it, so a worker that
was cold-started and one that has been up for a week agree.
"""
import json
import math
from typing import Any, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col

from . import civil_day, models
from .errors import SessionNotFound
from .logging_utils import get_logger

logger = get_logger("artalyze.player_state")

MISTAKE_BUCKETS = range(0, 6)


def _zero_distribution() -> dict:
    return {str(i): 0 for i in MISTAKE_BUCKETS}


def _load(raw: Optional[str], default: Any) -> Any:
    try:
        val = json.loads(raw) if raw else default
    except ValueError:
        return default
    return val if isinstance(val, type(default)) else default


def _touch(ps: models.PlayerSession) -> None:
    ps.updated_at = models._utcnow()


def _save(session: Session, ps: models.PlayerSession) -> models.PlayerSession:
    _touch(ps)
    session.add(ps)
    session.commit()
    session.refresh(ps)
    return ps


def get_session(session: Session, user_id: int) -> Optional[models.PlayerSession]:
    return session.get(models.PlayerSession, user_id)


def require_session(session: Session, user_id: int) -> models.PlayerSession:
    ps = get_session(session, user_id)
    if ps is None:
        raise SessionNotFound(f"no player session for user {user_id}")
    return ps


def ensure_session(session: Session, user_id: int) -> models.PlayerSession:
    """Fetch the player's session, creating a zeroed one on first access."""
    ps = get_session(session, user_id)
    if ps is not None:
        return ps
    ps = models.PlayerSession(user_id=user_id)
    session.add(ps)
    try:
        session.commit()
        logger.info("player_session_created", extra={"user_id": user_id})
    except IntegrityError:
        # a concurrent request created it first
        session.rollback()
    return require_session(session, user_id)


def delete_session(session: Session, user_id: int) -> None:
    ps = get_session(session, user_id)
    if ps is not None:
        session.delete(ps)
        session.commit()


def has_played_today(session: Session, user_id: int) -> bool:
    ps = ensure_session(session, user_id)
    return ps.last_played_date == civil_day.today_key()


def record_completion(session: Session, user_id: int, was_perfect: bool) -> models.PlayerSession:
    """Advance the streaks for finishing today's puzzle.

    Playing the day after the last play extends the streak, a gap restarts
    it at 1 and a repeat completion on the same day leaves it alone.
    """
    ps = require_session(session, user_id)
    today = civil_day.today_key()
    yesterday = civil_day.yesterday_key()

    if ps.last_played_date == yesterday:
        ps.current_streak += 1
        ps.perfect_streak = ps.perfect_streak + 1 if was_perfect else 0
    elif ps.last_played_date != today:
        ps.current_streak = 1
        ps.perfect_streak = 1 if was_perfect else 0

    ps.max_streak = max(ps.max_streak, ps.current_streak)
    ps.max_perfect_streak = max(ps.max_perfect_streak, ps.perfect_streak)
    ps.last_played_date = today
    logger.info("completion_recorded", extra={
        "user_id": user_id, "current_streak": ps.current_streak, "perfect_streak": ps.perfect_streak,
    })
    return _save(session, ps)


def record_attempt(session: Session, user_id: int, correct_count: int, total_count: int) -> models.PlayerSession:
    ps = ensure_session(session, user_id)
    # anything past the last bucket counts as the last bucket
    mistakes = min(max(total_count - correct_count, 0), MISTAKE_BUCKETS[-1])

    ps.games_played += 1
    dist = _load(ps.mistake_distribution_json, _zero_distribution())
    dist[str(mistakes)] = int(dist.get(str(mistakes), 0)) + 1
    ps.mistake_distribution_json = json.dumps(dist)
    ps.most_recent_score = mistakes
    if mistakes == 0:
        ps.perfect_puzzles += 1
    # half-up rounding, 12.5 -> 13
    ps.win_percentage = int(math.floor(100 * ps.perfect_puzzles / ps.games_played + 0.5))
    return _save(session, ps)


def get_selections(session: Session, user_id: int) -> List[Any]:
    """Return today's selections, clearing them first if they belong to an earlier day."""
    ps = require_session(session, user_id)
    today = civil_day.today_key()
    if ps.last_selection_made_date != today:
        logger.info("selections_rolled_over", extra={"user_id": user_id, "day": today})
        ps.selections_json = "[]"
        ps.last_selection_made_date = today
        _save(session, ps)
    return _load(ps.selections_json, [])


def save_selections(session: Session, user_id: int, selections: List[Any]) -> List[Any]:
    ps = ensure_session(session, user_id)
    ps.selections_json = json.dumps(selections)
    ps.last_selection_made_date = civil_day.today_key()
    _save(session, ps)
    return _load(ps.selections_json, [])


def get_tries_remaining(session: Session, user_id: int) -> int:
    return require_session(session, user_id).tries_remaining


def decrement_tries(session: Session, user_id: int) -> int:
    """Use up one try. Not clamped; use_try is the guarded form."""
    res = session.execute(
        update(models.PlayerSession)
        .where(col(models.PlayerSession.user_id) == user_id)
        .values(
            tries_remaining=models.PlayerSession.tries_remaining - 1,
            last_tries_made_date=civil_day.today_key(),
            updated_at=models._utcnow(),
        )
    )
    if res.rowcount != 1:
        session.rollback()
        raise SessionNotFound(f"no player session for user {user_id}")
    session.commit()
    return require_session(session, user_id).tries_remaining


def use_try(session: Session, user_id: int) -> Optional[int]:
    """Take one try only while some are left; None when there are none.

    The check and the decrement are one UPDATE, so concurrent requests can
    never take the count below zero.
    """
    res = session.execute(
        update(models.PlayerSession)
        .where(col(models.PlayerSession.user_id) == user_id)
        .where(col(models.PlayerSession.tries_remaining) > 0)
        .values(
            tries_remaining=models.PlayerSession.tries_remaining - 1,
            last_tries_made_date=civil_day.today_key(),
            updated_at=models._utcnow(),
        )
    )
    if res.rowcount != 1:
        session.rollback()
        require_session(session, user_id)
        return None
    session.commit()
    return require_session(session, user_id).tries_remaining


def reset_tries_if_due(session: Session, user_id: int) -> int:
    ps = require_session(session, user_id)
    today = civil_day.today_key()
    if ps.last_played_date == today or ps.last_tries_made_date != today:
        ps.tries_remaining = models.MAX_TRIES
        ps.last_tries_made_date = today
        _save(session, ps)
        logger.info("tries_reset", extra={"user_id": user_id})
    return ps.tries_remaining


def get_completed_selections(session: Session, user_id: int) -> List[Any]:
    return _load(require_session(session, user_id).completed_selections_json, [])


def save_completed_selections(session: Session, user_id: int, completed: List[Any]) -> List[Any]:
    ps = require_session(session, user_id)
    ps.completed_selections_json = json.dumps(completed)
    _save(session, ps)
    return completed


def save_already_guessed(session: Session, user_id: int, guessed: List[List[str]]) -> List[List[str]]:
    ps = ensure_session(session, user_id)
    ps.already_guessed_json = json.dumps(guessed)
    _save(session, ps)
    return guessed


def save_attempts(session: Session, user_id: int, attempts: List[List[Any]]) -> List[List[bool]]:
    formatted = [[bool(selected) for selected in attempt] for attempt in attempts]
    ps = ensure_session(session, user_id)
    ps.attempts_json = json.dumps(formatted)
    _save(session, ps)
    return formatted


def save_completed_attempts(session: Session, user_id: int, completed: List[Any]) -> List[Any]:
    ps = ensure_session(session, user_id)
    ps.completed_attempts_json = json.dumps(completed)
    _save(session, ps)
    return completed


def reset_stats(session: Session, user_id: int) -> models.PlayerSession:
    ps = require_session(session, user_id)
    ps.games_played = 0
    ps.win_percentage = 0
    ps.current_streak = 0
    ps.max_streak = 0
    ps.perfect_streak = 0
    ps.max_perfect_streak = 0
    ps.perfect_puzzles = 0
    ps.mistake_distribution_json = json.dumps(_zero_distribution())
    ps.most_recent_score = None
    ps.last_played_date = None
    return _save(session, ps)


def to_dict(ps: models.PlayerSession) -> dict:
    return {
        "userId": ps.user_id,
        "triesRemaining": ps.tries_remaining,
        "lastPlayedDate": ps.last_played_date,
        "lastSelectionMadeDate": ps.last_selection_made_date,
        "lastTriesMadeDate": ps.last_tries_made_date,
        "selections": _load(ps.selections_json, []),
        "completedSelections": _load(ps.completed_selections_json, []),
        "alreadyGuessed": _load(ps.already_guessed_json, []),
        "attempts": _load(ps.attempts_json, []),
        "completedAttempts": _load(ps.completed_attempts_json, []),
        "currentStreak": ps.current_streak,
        "maxStreak": ps.max_streak,
        "perfectStreak": ps.perfect_streak,
        "maxPerfectStreak": ps.max_perfect_streak,
        "perfectPuzzles": ps.perfect_puzzles,
        "gamesPlayed": ps.games_played,
        "winPercentage": ps.win_percentage,
        "mistakeDistribution": _load(ps.mistake_distribution_json, _zero_distribution()),
        "mostRecentScore": ps.most_recent_score,
    }
