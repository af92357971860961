from typing import Optional
from pydantic import BaseModel, Field as PydanticField
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone

MAX_PAIRS = 5
MAX_TRIES = 3
PUZZLE_STATUSES = ("pending", "approved", "live")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "user"
    theme_preference: str = "light"
    created_at: Optional[datetime] = Field(default_factory=_utcnow)


class PuzzleDay(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    scheduled_date: datetime = Field(index=True, unique=True)  # local midnight, UTC
    day_key: str = Field(index=True, unique=True)  # YYYY-MM-DD
    status: str = "pending"
    pair_count: int = 0
    next_position: int = 0
    created_at: Optional[datetime] = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = Field(default_factory=_utcnow)


class PairMetadata(SQLModel):
    """Provenance of a pair. Informational only; game logic never reads it."""
    description: Optional[str] = None
    style_analysis: Optional[str] = None
    generation_prompt: Optional[str] = None
    source_public_id: Optional[str] = None
    model: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    generated_at: Optional[datetime] = None


class ImagePair(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    day_id: int = Field(foreign_key="puzzleday.id", index=True)
    position: int = 0
    human_image_url: str
    ai_image_url: str
    metadata_json: str = "{}"
    created_at: Optional[datetime] = Field(default_factory=_utcnow)


class PendingImage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    url: str
    public_id: str
    width: Optional[int] = None
    height: Optional[int] = None
    uploaded_at: datetime = Field(default_factory=_utcnow, index=True)
    used: bool = False
    used_at: Optional[datetime] = None


class PlayerSession(SQLModel, table=True):
    user_id: int = Field(primary_key=True, foreign_key="account.id")
    tries_remaining: int = MAX_TRIES
    last_played_date: Optional[str] = None  # civil day keys, never instants
    last_selection_made_date: Optional[str] = None
    last_tries_made_date: Optional[str] = None
    selections_json: str = "[]"
    completed_selections_json: str = "[]"
    already_guessed_json: str = "[]"
    attempts_json: str = "[]"
    completed_attempts_json: str = "[]"
    current_streak: int = 0
    max_streak: int = 0
    perfect_streak: int = 0
    max_perfect_streak: int = 0
    perfect_puzzles: int = 0
    games_played: int = 0
    win_percentage: int = 0
    mistake_distribution_json: str = '{"0": 0, "1": 0, "2": 0, "3": 0, "4": 0, "5": 0}'
    most_recent_score: Optional[int] = None
    created_at: Optional[datetime] = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = Field(default_factory=_utcnow)


class NewPair(BaseModel):
    """A pair ready to be placed; both images must already be hosted."""
    human_image_url: str = PydanticField(min_length=1)
    ai_image_url: str = PydanticField(min_length=1)
    metadata: PairMetadata = PydanticField(default_factory=PairMetadata)
