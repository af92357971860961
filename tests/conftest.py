import sys
import datetime
from pathlib import Path
import pytest
import pytz

# Ensure project root is on sys.path so tests can import the `artalyze` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sqlmodel import SQLModel, Session, create_engine  # noqa: E402

from artalyze import civil_day, crud, models  # noqa: E402


@pytest.fixture(autouse=True)
def reset_rate_limiter():
	# Clear in-memory rate limiter between tests to avoid cross-test flakiness
	try:
		import artalyze.main as app_main
		app_main._RATE_LIMIT_STORE.clear()
	except ImportError:
		pass
	yield


@pytest.fixture(autouse=True)
def reset_cache():
	from artalyze.cache import get_cache
	get_cache().clear()
	yield
	get_cache().clear()


@pytest.fixture
def clock(monkeypatch):
	"""Freeze "now". Call the returned function with an ISO instant (UTC) to move it."""
	state = {}

	def set_now(iso: str):
		state['now'] = pytz.utc.localize(datetime.datetime.fromisoformat(iso))
		return state['now']

	set_now('2024-06-01T15:00:00')
	monkeypatch.setattr(civil_day, 'utc_now', lambda: state['now'])
	return set_now


def setup_db(tmp_path, name='test.db'):
	db = tmp_path / name
	engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False, "timeout": 30})
	SQLModel.metadata.create_all(engine)
	crud.engine = engine
	return engine


@pytest.fixture
def engine(tmp_path):
	return setup_db(tmp_path)


@pytest.fixture
def session(engine):
	with Session(engine) as s:
		yield s


def make_pair(n=0, **meta):
	return models.NewPair(
		human_image_url=f'https://img.example/human-{n}.jpg',
		ai_image_url=f'https://img.example/ai-{n}.png',
		metadata=models.PairMetadata(**meta),
	)


def make_account(session, email='player@example.com'):
	acct = models.Account(email=email, password_hash='x')
	session.add(acct)
	session.commit()
	session.refresh(acct)
	return acct
