from fastapi import FastAPI, Depends, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from sqlmodel import SQLModel, Session, create_engine
from pydantic import BaseModel, Field, field_validator
from typing import Any, List, Literal, Optional

import anyio
import logging
import os
import time
import uuid

from . import civil_day, creative, crud, models, player_state, puzzle_store, scheduler
from .deps import get_session, optional_user_id, current_user_id, require_admin
from .errors import PuzzleError
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .realtime import ConnectionRegistry

DATE_PATTERN = r'^\d{4}-\d{2}-\d{2}$'

# Rate limiting - store last request times per IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    Simple in-memory rate limiting. Returns True if request is allowed, False if rate limited.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()
    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[client_ip] = [
        t for t in _RATE_LIMIT_STORE.get(client_ip, []) if t > cutoff_time
    ]
    if len(_RATE_LIMIT_STORE[client_ip]) >= max_requests:
        return False
    _RATE_LIMIT_STORE[client_ip].append(current_time)
    return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds."
            )
    return dependency


setup_logging(logging.INFO)
logger = get_logger("artalyze")
app = FastAPI(title="Artalyze")

# live admin connections watching automated batches
registry = ConnectionRegistry()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        return response


app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception("request_error", extra={"path": str(request.url), "method": request.method})
            raise
        finally:
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": getattr(response, "status_code", 500),
                    "duration_ms": int((time.time() - start) * 1000),
                    "client": request.client.host if request.client else "-",
                    "user_agent": request.headers.get("user-agent", "-"),
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

_EXTRA_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        *_EXTRA_ORIGINS,
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "Authorization", "X-Requested-With"],
    max_age=86400,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors()), "message": "Input validation failed"},
    )


@app.exception_handler(PuzzleError)
async def puzzle_error_handler(request: Request, exc: PuzzleError):
    logger.info("puzzle_error", extra={"path": request.url.path, "kind": exc.kind, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok", "today": civil_day.today_key()})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    from .cache import get_cache
    return JSONResponse({"cache_stats": get_cache().stats(), "status": "ok"})


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    db_path = os.getenv("DATABASE_URL", "sqlite:///./artalyze.db")
    if not db_path.startswith("sqlite"):
        engine = create_engine(
            db_path,
            echo=False,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=1800,
        )
    else:
        engine = create_engine(db_path, echo=False, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(engine)
    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})
    crud.engine = engine


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254, pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
    password: str = Field(..., min_length=8, max_length=128)
    firstName: Optional[str] = Field(None, max_length=64)
    lastName: Optional[str] = Field(None, max_length=64)

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        import re
        if not re.search(r'[a-z]', v):
            raise ValueError('Password must contain at least one lowercase letter')
        if not re.search(r'[A-Z]', v):
            raise ValueError('Password must contain at least one uppercase letter')
        if not re.search(r'\d', v):
            raise ValueError('Password must contain at least one number')
        return v


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)


def _issue_token(session: Session, account: models.Account, response: Response) -> str:
    assert account.id is not None
    token = crud.sign_user_token(session, account.id) or ''
    response.set_cookie('player_token', token, httponly=True, samesite='lax')
    return token


@app.post("/api/auth/register", status_code=201)
def register(
    body: RegisterRequest,
    response: Response,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=5, window_seconds=300)),
):
    acct = crud.create_account(session, body.email, body.password, body.firstName, body.lastName)
    if not acct:
        raise HTTPException(status_code=400, detail="Email already registered")
    token = _issue_token(session, acct, response)
    return {"id": acct.id, "email": acct.email, "token": token}


@app.post("/api/auth/login")
def login(
    body: LoginRequest,
    response: Response,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency(max_requests=10, window_seconds=60)),
):
    acct = crud.authenticate(session, body.email, body.password)
    if not acct:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = _issue_token(session, acct, response)
    return {
        "token": token,
        "user": {"id": acct.id, "email": acct.email, "firstName": acct.first_name, "lastName": acct.last_name},
    }


class ThemeRequest(BaseModel):
    themePreference: Literal["light", "dark"]


@app.get("/api/user/theme")
def get_theme(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    acct = session.get(models.Account, user_id)
    if not acct:
        raise HTTPException(status_code=404, detail="User not found")
    return {"themePreference": acct.theme_preference}


@app.put("/api/user/theme")
def update_theme(body: ThemeRequest, user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    acct = crud.set_theme_preference(session, user_id, body.themePreference)
    if not acct:
        raise HTTPException(status_code=404, detail="User not found")
    return {"themePreference": acct.theme_preference}


@app.delete("/api/user")
def delete_user(response: Response, user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    crud.delete_account(session, user_id)
    response.delete_cookie('player_token')
    return {"message": "User deleted successfully"}


# ---------------------------------------------------------------------------
# Game
# ---------------------------------------------------------------------------

@app.get("/api/game/daily-puzzle")
def get_daily_puzzle(session: Session = Depends(get_session)):
    from .cache import get_cached_daily_puzzle, cache_daily_puzzle, puzzle_generation

    today = civil_day.today_key()
    pairs = get_cached_daily_puzzle(today)
    if pairs is None:
        # taken before the query so a concurrent mutation voids the write below
        generation = puzzle_generation(today)
        pairs = puzzle_store.list_pairs_for_display(session, today)
        if pairs:
            cache_daily_puzzle(today, pairs, generation=generation)
    if not pairs:
        return JSONResponse(
            {"detail": "No puzzles available for today", "message": "Please check back later!"},
            status_code=404,
        )
    return {"date": today, "pairs": pairs}


@app.get("/api/game/check-today-status")
def check_today_status(
    request: Request,
    user_id: Optional[int] = Depends(optional_user_id),
    session: Session = Depends(get_session),
):
    if user_id is not None:
        played = player_state.has_played_today(session, user_id)
        tries = player_state.get_tries_remaining(session, user_id)
        return {"hasPlayedToday": played, "triesRemaining": tries}

    # guests are tracked by cookie only
    played = request.cookies.get('guestLastPlayed') == civil_day.today_key()
    return {"hasPlayedToday": played, "triesRemaining": 0 if played else models.MAX_TRIES}


class MarkPlayedRequest(BaseModel):
    isPerfectPuzzle: bool = False


@app.post("/api/game/mark-as-played")
def mark_as_played(body: MarkPlayedRequest, user_id: int = Depends(current_user_id),
                   session: Session = Depends(get_session)):
    ps = player_state.record_completion(session, user_id, body.isPerfectPuzzle)
    return {
        "message": "Play status and streaks updated successfully.",
        "lastPlayedDate": ps.last_played_date,
        "currentStreak": ps.current_streak,
        "maxStreak": ps.max_streak,
        "perfectStreak": ps.perfect_streak,
        "maxPerfectStreak": ps.max_perfect_streak,
    }


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

class AttemptRequest(BaseModel):
    correctAnswers: int = Field(..., ge=0, le=models.MAX_PAIRS)
    totalQuestions: int = Field(..., ge=0, le=models.MAX_PAIRS)
    completedSelections: Optional[List[Any]] = None


class SelectionsRequest(BaseModel):
    selections: List[Any]


class CompletedSelectionsRequest(BaseModel):
    completedSelections: List[Any]


class AlreadyGuessedRequest(BaseModel):
    alreadyGuessed: List[List[str]]


class AttemptsRequest(BaseModel):
    attempts: List[List[Any]]


class CompletedAttemptsRequest(BaseModel):
    completedAttempts: List[Any]


@app.get("/api/stats")
def get_stats(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    return player_state.to_dict(player_state.require_session(session, user_id))


@app.put("/api/stats")
def update_stats(body: AttemptRequest, user_id: int = Depends(current_user_id),
                 session: Session = Depends(get_session)):
    ps = player_state.record_attempt(session, user_id, body.correctAnswers, body.totalQuestions)
    if body.completedSelections is not None:
        player_state.save_completed_selections(session, user_id, body.completedSelections)
        ps = player_state.require_session(session, user_id)
    return player_state.to_dict(ps)


@app.post("/api/stats/reset")
def reset_stats(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    return player_state.to_dict(player_state.reset_stats(session, user_id))


@app.get("/api/stats/tries")
def get_tries(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    return {"triesRemaining": player_state.get_tries_remaining(session, user_id)}


@app.put("/api/stats/tries/decrement")
def decrement_tries(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    remaining = player_state.use_try(session, user_id)
    if remaining is None:
        raise HTTPException(status_code=409, detail="No tries remaining")
    return {"triesRemaining": remaining}


@app.put("/api/stats/tries/reset")
def reset_tries(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    return {"triesRemaining": player_state.reset_tries_if_due(session, user_id)}


@app.get("/api/stats/selections")
def get_selections(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    return {"selections": player_state.get_selections(session, user_id)}


@app.put("/api/stats/selections")
def save_selections(body: SelectionsRequest, user_id: int = Depends(current_user_id),
                    session: Session = Depends(get_session)):
    return {"selections": player_state.save_selections(session, user_id, body.selections)}


@app.get("/api/stats/completed-selections")
def get_completed_selections(user_id: int = Depends(current_user_id), session: Session = Depends(get_session)):
    return {"completedSelections": player_state.get_completed_selections(session, user_id)}


@app.put("/api/stats/completed-selections")
def save_completed_selections(body: CompletedSelectionsRequest, user_id: int = Depends(current_user_id),
                              session: Session = Depends(get_session)):
    return {"completedSelections": player_state.save_completed_selections(session, user_id, body.completedSelections)}


@app.put("/api/stats/already-guessed")
def save_already_guessed(body: AlreadyGuessedRequest, user_id: int = Depends(current_user_id),
                         session: Session = Depends(get_session)):
    return {"alreadyGuessed": player_state.save_already_guessed(session, user_id, body.alreadyGuessed)}


@app.put("/api/stats/attempts")
def save_attempts(body: AttemptsRequest, user_id: int = Depends(current_user_id),
                  session: Session = Depends(get_session)):
    return {"attempts": player_state.save_attempts(session, user_id, body.attempts)}


@app.put("/api/stats/completed-attempts")
def save_completed_attempts(body: CompletedAttemptsRequest, user_id: int = Depends(current_user_id),
                            session: Session = Depends(get_session)):
    return {"completedAttempts": player_state.save_completed_attempts(session, user_id, body.completedAttempts)}


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

class AdminLoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)


class PlacePairRequest(BaseModel):
    date: Optional[str] = Field(None, pattern=DATE_PATTERN)
    humanImageURL: str = Field(..., min_length=1, max_length=2048)
    aiImageURL: str = Field(..., min_length=1, max_length=2048)
    metadata: models.PairMetadata = Field(default_factory=models.PairMetadata)

    def to_pair(self) -> models.NewPair:
        return models.NewPair(
            human_image_url=self.humanImageURL,
            ai_image_url=self.aiImageURL,
            metadata=self.metadata,
        )


class BulkPlaceRequest(BaseModel):
    pairs: List[PlacePairRequest] = Field(..., min_length=1, max_length=50)


class PairRef(BaseModel):
    date: str = Field(..., pattern=DATE_PATTERN)
    id: str = Field(..., min_length=1, max_length=64)


class BulkDeleteRequest(BaseModel):
    items: List[PairRef] = Field(..., min_length=1, max_length=50)


class StatusRequest(BaseModel):
    status: Literal["pending", "approved", "live"]


class PendingImageRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)
    publicId: str = Field(..., min_length=1, max_length=256)
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)


def get_pipeline() -> creative.CreativePipeline:
    return creative.default_pipeline()


def _place(session: Session, body: PlacePairRequest) -> dict:
    pair = body.to_pair()
    if body.date:
        day = scheduler.schedule_explicit(session, body.date, pair)
        key = body.date
    else:
        key, day = scheduler.schedule_next_available(session, pair)
    return {"date": key, "puzzle": puzzle_store.serialize_day(session, day)}


@app.post("/api/admin/login")
def admin_login(
    body: AdminLoginRequest,
    _: None = Depends(rate_limit_dependency(max_requests=5, window_seconds=60)),
):
    if not crud.check_admin_credentials(body.email, body.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": crud.sign_admin_token()}


@app.post("/api/admin/pairs", status_code=201, dependencies=[Depends(require_admin)])
def place_pair(body: PlacePairRequest, session: Session = Depends(get_session)):
    return _place(session, body)


@app.post("/api/admin/pairs/bulk", dependencies=[Depends(require_admin)])
def place_pairs_bulk(body: BulkPlaceRequest, session: Session = Depends(get_session)):
    results = []
    for idx, item in enumerate(body.pairs):
        try:
            placed = _place(session, item)
            results.append({"index": idx, "ok": True, "date": placed["date"]})
        except PuzzleError as e:
            results.append({"index": idx, "ok": False, "kind": e.kind, "error": e.message})
    return {"results": results, "placed": sum(1 for r in results if r["ok"])}


@app.get("/api/admin/pairs/{date}", dependencies=[Depends(require_admin)])
def get_pairs_for_date(date: str, session: Session = Depends(get_session)):
    civil_day.parse_key(date)
    return puzzle_store.serialize_day(session, puzzle_store.require_day(session, date))


@app.put("/api/admin/pairs/{date}/{pair_id}", dependencies=[Depends(require_admin)])
def replace_pair(date: str, pair_id: str, body: PlacePairRequest, session: Session = Depends(get_session)):
    civil_day.parse_key(date)
    puzzle_store.replace_pair(session, date, pair_id, body.to_pair())
    return puzzle_store.serialize_day(session, puzzle_store.require_day(session, date))


@app.delete("/api/admin/pairs/{date}/{pair_id}", dependencies=[Depends(require_admin)])
def delete_pair(date: str, pair_id: str, session: Session = Depends(get_session)):
    civil_day.parse_key(date)
    day = puzzle_store.remove_pair(session, date, pair_id)
    return puzzle_store.serialize_day(session, day)


@app.post("/api/admin/pairs/bulk-delete", dependencies=[Depends(require_admin)])
def delete_pairs_bulk(body: BulkDeleteRequest, session: Session = Depends(get_session)):
    results = []
    for ref in body.items:
        try:
            puzzle_store.remove_pair(session, ref.date, ref.id)
            results.append({"id": ref.id, "ok": True})
        except PuzzleError as e:
            results.append({"id": ref.id, "ok": False, "kind": e.kind, "error": e.message})
    return {"results": results, "deleted": sum(1 for r in results if r["ok"])}


@app.get("/api/admin/days", dependencies=[Depends(require_admin)])
def list_days(start: str = "", limit: int = 14, session: Session = Depends(get_session)):
    if limit < 1 or limit > 100:
        raise HTTPException(status_code=400, detail="Limit must be between 1 and 100")
    from_key = start or civil_day.today_key()
    civil_day.parse_key(from_key)
    days = puzzle_store.list_days(session, from_key, limit)
    return {"days": [{"date": d.day_key, "status": d.status, "pairCount": d.pair_count} for d in days]}


@app.put("/api/admin/days/{date}/status", dependencies=[Depends(require_admin)])
def set_day_status(date: str, body: StatusRequest, session: Session = Depends(get_session)):
    civil_day.parse_key(date)
    day = puzzle_store.set_status(session, date, body.status)
    return {"date": day.day_key, "status": day.status}


@app.delete("/api/admin/days/{date}", dependencies=[Depends(require_admin)])
def delete_day(date: str, session: Session = Depends(get_session)):
    civil_day.parse_key(date)
    puzzle_store.delete_day(session, date)
    return {"message": f"Puzzle for {date} deleted"}


@app.post("/api/admin/pending-images", status_code=201, dependencies=[Depends(require_admin)])
def stage_pending_image(body: PendingImageRequest, session: Session = Depends(get_session)):
    img = puzzle_store.stage_pending_image(session, body.url, body.publicId, body.width, body.height)
    return {"id": img.id, "url": img.url, "publicId": img.public_id}


@app.get("/api/admin/pending-images", dependencies=[Depends(require_admin)])
def list_pending_images(limit: int = 5, session: Session = Depends(get_session)):
    images = puzzle_store.oldest_unused_images(session, max(1, min(limit, 50)))
    return {
        "unused": puzzle_store.count_unused_images(session),
        "oldest": [{"id": i.id, "url": i.url, "publicId": i.public_id} for i in images],
    }


@app.post("/api/admin/automate", dependencies=[Depends(require_admin)])
async def automate(count: int = 5, pipeline: creative.CreativePipeline = Depends(get_pipeline)):
    """Run the creative pipeline over the oldest unused staged images."""
    if count < 1 or count > 20:
        raise HTTPException(status_code=400, detail="Count must be between 1 and 20")

    def notify(item: creative.BatchItem) -> None:
        anyio.from_thread.run(registry.broadcast, item.as_event())

    def work():
        with Session(crud.engine) as s:
            images = puzzle_store.oldest_unused_images(s, count)
            return pipeline.run_batch(s, images, on_result=notify)

    results = await run_in_threadpool(work)
    summary = creative.summarize(results)
    await registry.broadcast({"type": "batch_done", **{k: summary[k] for k in ("scheduled", "skipped", "failed")}})
    return summary


@app.websocket("/api/admin/ws")
async def admin_ws(ws: WebSocket):
    token = ws.query_params.get("token", "")
    if not crud.verify_admin_token(token):
        await ws.close(code=1008)
        return
    await ws.accept()
    registry.register(ws)
    try:
        while True:
            msg = await ws.receive_text()
            registry.touch(ws)
            if msg == "ping":
                await ws.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        registry.deregister(ws)
