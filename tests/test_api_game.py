from fastapi.testclient import TestClient
from sqlmodel import Session

from artalyze.main import app
from artalyze import crud, puzzle_store, player_state
from conftest import setup_db, make_pair

PASSWORD = 'Sup3rSecret'


def register(client, email='player@example.com'):
    r = client.post('/api/auth/register', json={'email': email, 'password': PASSWORD, 'firstName': 'Pat'})
    assert r.status_code == 201, r.text
    return r.json()


def test_health(tmp_path, clock):
    setup_db(tmp_path)
    client = TestClient(app)
    r = client.get('/health')
    assert r.status_code == 200
    assert r.json() == {'status': 'ok', 'today': '2024-06-01'}
    assert r.headers.get('X-Request-ID')


def test_register_login_and_duplicate(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    data = register(client, 'Mixed@Example.com')
    assert data['email'] == 'mixed@example.com'
    assert data['token'].startswith(f"{data['id']}.")

    dup = client.post('/api/auth/register', json={'email': 'mixed@example.com', 'password': PASSWORD})
    assert dup.status_code == 400

    bad = client.post('/api/auth/login', json={'email': 'mixed@example.com', 'password': 'wrong'})
    assert bad.status_code == 401

    ok = client.post('/api/auth/login', json={'email': 'mixed@example.com', 'password': PASSWORD})
    assert ok.status_code == 200
    assert ok.json()['user']['firstName'] == 'Pat'


def test_register_validates_password(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    r = client.post('/api/auth/register', json={'email': 'a@example.com', 'password': 'alllowercase1'})
    assert r.status_code == 422
    assert r.json()['message'] == 'Input validation failed'


def test_registration_creates_player_session(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    uid = register(client)['id']
    with Session(engine) as s:
        assert player_state.get_session(s, uid) is not None


def test_daily_puzzle_missing(tmp_path, clock):
    setup_db(tmp_path)
    client = TestClient(app)
    r = client.get('/api/game/daily-puzzle')
    assert r.status_code == 404
    assert r.json()['detail'] == 'No puzzles available for today'


def test_daily_puzzle_follows_eastern_day(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        puzzle_store.append_pair(s, '2024-06-01', make_pair(0, generation_prompt='hidden'))
        puzzle_store.append_pair(s, '2024-06-01', make_pair(1))
        puzzle_store.append_pair(s, '2024-06-02', make_pair(2))
    client = TestClient(app)

    # 23:30 New York time on June 1st
    clock('2024-06-02T03:30:00')
    r = client.get('/api/game/daily-puzzle')
    assert r.status_code == 200
    body = r.json()
    assert body['date'] == '2024-06-01'
    assert body['pairs'] == [
        {'humanImageURL': 'https://img.example/human-0.jpg', 'aiImageURL': 'https://img.example/ai-0.png'},
        {'humanImageURL': 'https://img.example/human-1.jpg', 'aiImageURL': 'https://img.example/ai-1.png'},
    ]

    clock('2024-06-02T04:00:00')
    body = client.get('/api/game/daily-puzzle').json()
    assert body['date'] == '2024-06-02'
    assert len(body['pairs']) == 1


def test_daily_puzzle_reflects_new_pairs(tmp_path, clock):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        puzzle_store.append_pair(s, '2024-06-01', make_pair(0))
    client = TestClient(app)
    assert len(client.get('/api/game/daily-puzzle').json()['pairs']) == 1
    with Session(engine) as s:
        puzzle_store.append_pair(s, '2024-06-01', make_pair(1))
    assert len(client.get('/api/game/daily-puzzle').json()['pairs']) == 2


def test_stale_read_is_not_cached_over_a_concurrent_append(tmp_path, clock, monkeypatch):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        puzzle_store.append_pair(s, '2024-06-01', make_pair(0))
    original = puzzle_store.list_pairs_for_display

    def read_then_append(session, key):
        # the query finishes, then another writer appends before the cache write
        pairs = original(session, key)
        with Session(engine) as s:
            puzzle_store.append_pair(s, key, make_pair(1))
        return pairs

    monkeypatch.setattr(puzzle_store, 'list_pairs_for_display', read_then_append)
    client = TestClient(app)
    assert len(client.get('/api/game/daily-puzzle').json()['pairs']) == 1
    monkeypatch.setattr(puzzle_store, 'list_pairs_for_display', original)
    assert len(client.get('/api/game/daily-puzzle').json()['pairs']) == 2


def test_check_today_status_guest(tmp_path, clock):
    setup_db(tmp_path)
    client = TestClient(app)
    r = client.get('/api/game/check-today-status')
    assert r.json() == {'hasPlayedToday': False, 'triesRemaining': 3}

    client.cookies.set('guestLastPlayed', '2024-06-01')
    r = client.get('/api/game/check-today-status')
    assert r.json() == {'hasPlayedToday': True, 'triesRemaining': 0}


def test_mark_as_played_and_status(tmp_path, clock):
    setup_db(tmp_path)
    client = TestClient(app)
    register(client)

    assert client.get('/api/game/check-today-status').json()['hasPlayedToday'] is False
    r = client.post('/api/game/mark-as-played', json={'isPerfectPuzzle': True})
    assert r.status_code == 200
    body = r.json()
    assert body['currentStreak'] == 1
    assert body['perfectStreak'] == 1
    assert body['lastPlayedDate'] == '2024-06-01'
    assert client.get('/api/game/check-today-status').json()['hasPlayedToday'] is True

    clock('2024-06-02T15:00:00')
    body = client.post('/api/game/mark-as-played', json={'isPerfectPuzzle': False}).json()
    assert (body['currentStreak'], body['perfectStreak'], body['maxPerfectStreak']) == (2, 0, 1)


def test_mark_as_played_requires_login(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    assert client.post('/api/game/mark-as-played', json={}).status_code == 401


def test_bearer_token_and_bad_token(tmp_path):
    setup_db(tmp_path)
    token = register(TestClient(app))['token']
    client = TestClient(app)
    assert client.get('/api/stats', headers={'Authorization': f'Bearer {token}'}).status_code == 200
    assert client.get('/api/stats', headers={'Authorization': f'Bearer {token}x'}).status_code == 401


def test_theme_and_account_deletion(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    uid = register(client)['id']

    assert client.get('/api/user/theme').json() == {'themePreference': 'light'}
    assert client.put('/api/user/theme', json={'themePreference': 'dark'}).json() == {'themePreference': 'dark'}
    assert client.put('/api/user/theme', json={'themePreference': 'neon'}).status_code == 422

    r = client.delete('/api/user')
    assert r.status_code == 200
    with Session(engine) as s:
        assert player_state.get_session(s, uid) is None
        assert crud.get_account_by_email(s, 'player@example.com') is None


def test_register_rate_limited(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    codes = [
        client.post('/api/auth/register', json={'email': f'u{i}@example.com', 'password': PASSWORD}).status_code
        for i in range(6)
    ]
    assert codes[:5] == [201] * 5
    assert codes[5] == 429
