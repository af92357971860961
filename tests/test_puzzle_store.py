import threading
import datetime
import pytest
from sqlmodel import Session

from artalyze import puzzle_store, models, civil_day
from artalyze.cache import cache_daily_puzzle, get_cached_daily_puzzle
from artalyze.errors import CapacityExceeded, ImageAlreadyUsed, NoAvailableDay, NotFound, InvalidDate
from conftest import make_pair


def fill(session, key, n=models.MAX_PAIRS):
    for i in range(n):
        puzzle_store.append_pair(session, key, make_pair(i))


def test_append_creates_bucket_lazily(session):
    assert puzzle_store.get_day(session, '2024-06-01') is None
    day = puzzle_store.append_pair(session, '2024-06-01', make_pair(0, description='a lighthouse'))
    assert day.day_key == '2024-06-01'
    assert day.pair_count == 1
    assert day.status == 'pending'
    # stored at local midnight in UTC
    assert civil_day.from_storage(day.scheduled_date) == datetime.datetime(2024, 6, 1, 4, 0, tzinfo=datetime.timezone.utc)
    pairs = puzzle_store.list_pairs(session, day)
    assert len(pairs) == 1
    assert puzzle_store.pair_metadata(pairs[0]).description == 'a lighthouse'


def test_capacity_is_enforced(session):
    fill(session, '2024-06-01')
    with pytest.raises(CapacityExceeded):
        puzzle_store.append_pair(session, '2024-06-01', make_pair(99))
    day = puzzle_store.require_day(session, '2024-06-01')
    assert day.pair_count == models.MAX_PAIRS
    assert [p.position for p in puzzle_store.list_pairs(session, day)] == [0, 1, 2, 3, 4]


def test_invalid_key_rejected(session):
    with pytest.raises(InvalidDate):
        puzzle_store.append_pair(session, '2024-13-01', make_pair())


def test_concurrent_appends_never_overflow(engine):
    writers = 8
    barrier = threading.Barrier(writers)
    outcomes = []
    lock = threading.Lock()

    def worker(n):
        with Session(engine) as s:
            barrier.wait()
            try:
                puzzle_store.append_pair(s, '2024-06-01', make_pair(n))
                result = 'ok'
            except CapacityExceeded:
                result = 'full'
            except Exception as e:  # surfaced by the assertion below
                result = repr(e)
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count('ok') == models.MAX_PAIRS
    assert outcomes.count('full') == writers - models.MAX_PAIRS
    with Session(engine) as s:
        day = puzzle_store.require_day(s, '2024-06-01')
        assert day.pair_count == models.MAX_PAIRS
        assert len(puzzle_store.list_pairs(s, day)) == models.MAX_PAIRS


def test_dst_days_store_and_resolve(session):
    for key in ('2024-03-10', '2024-11-03'):
        puzzle_store.append_pair(session, key, make_pair())
        assert puzzle_store.require_day(session, key).day_key == key
    # neighbours stay empty
    assert puzzle_store.get_day(session, '2024-03-09') is None
    assert puzzle_store.get_day(session, '2024-11-04') is None


def test_find_day_with_spare_capacity(session):
    assert puzzle_store.find_day_with_spare_capacity(session, '2024-06-01') == '2024-06-01'
    fill(session, '2024-06-01')
    fill(session, '2024-06-02', 2)
    assert puzzle_store.find_day_with_spare_capacity(session, '2024-06-01') == '2024-06-02'
    fill(session, '2024-06-02', 3)
    assert puzzle_store.find_day_with_spare_capacity(session, '2024-06-01') == '2024-06-03'


def test_find_day_accepts_instants(session):
    fill(session, '2024-06-01')
    instant = datetime.datetime(2024, 6, 1, 16, 0, tzinfo=datetime.timezone.utc)
    assert puzzle_store.find_day_with_spare_capacity(session, instant) == '2024-06-02'


def test_find_day_gives_up_after_scan_window(session):
    fill(session, '2024-06-01')
    fill(session, '2024-06-02')
    with pytest.raises(NoAvailableDay):
        puzzle_store.find_day_with_spare_capacity(session, '2024-06-01', max_scan=2)


def test_replace_pair(session):
    day = puzzle_store.append_pair(session, '2024-06-01', make_pair(0))
    puzzle_store.append_pair(session, '2024-06-01', make_pair(1))
    first = puzzle_store.list_pairs(session, day)[0]

    updated = puzzle_store.replace_pair(session, '2024-06-01', first.id, make_pair(7, model='dall-e-3'))
    assert updated.id == first.id
    assert updated.ai_image_url.endswith('ai-7.png')
    assert updated.position == 0
    assert puzzle_store.pair_metadata(updated).model == 'dall-e-3'
    assert puzzle_store.require_day(session, '2024-06-01').pair_count == 2


def test_replace_and_remove_unknown_pair(session):
    puzzle_store.append_pair(session, '2024-06-01', make_pair(0))
    other = puzzle_store.append_pair(session, '2024-06-02', make_pair(1))
    foreign_id = puzzle_store.list_pairs(session, other)[0].id

    with pytest.raises(NotFound):
        puzzle_store.replace_pair(session, '2024-06-01', 'nope', make_pair())
    # a pair that lives on another day is not found on this one
    with pytest.raises(NotFound):
        puzzle_store.remove_pair(session, '2024-06-01', foreign_id)
    with pytest.raises(NotFound):
        puzzle_store.remove_pair(session, '2024-06-05', foreign_id)


def test_remove_frees_capacity_and_keeps_order(session):
    fill(session, '2024-06-01')
    day = puzzle_store.require_day(session, '2024-06-01')
    pairs = puzzle_store.list_pairs(session, day)

    day = puzzle_store.remove_pair(session, '2024-06-01', pairs[1].id)
    assert day.pair_count == 4
    puzzle_store.append_pair(session, '2024-06-01', make_pair(5))

    urls = [p['humanImageURL'] for p in puzzle_store.list_pairs_for_display(session, '2024-06-01')]
    assert urls == [f'https://img.example/human-{n}.jpg' for n in (0, 2, 3, 4, 5)]


def test_display_projection(session):
    assert puzzle_store.list_pairs_for_display(session, '2024-06-01') == []
    puzzle_store.append_pair(session, '2024-06-01', make_pair(0, generation_prompt='secret'))
    assert puzzle_store.list_pairs_for_display(session, '2024-06-01') == [
        {'humanImageURL': 'https://img.example/human-0.jpg', 'aiImageURL': 'https://img.example/ai-0.png'},
    ]


def test_mutations_invalidate_cached_puzzle(session):
    day = puzzle_store.append_pair(session, '2024-06-01', make_pair(0))
    cache_daily_puzzle('2024-06-01', ['stale'])
    puzzle_store.append_pair(session, '2024-06-01', make_pair(1))
    assert get_cached_daily_puzzle('2024-06-01') is None

    cache_daily_puzzle('2024-06-01', ['stale'])
    pair_id = puzzle_store.list_pairs(session, day)[0].id
    puzzle_store.remove_pair(session, '2024-06-01', pair_id)
    assert get_cached_daily_puzzle('2024-06-01') is None


def test_serialize_day(session):
    day = puzzle_store.append_pair(session, '2024-06-01', make_pair(0, width=640, height=480))
    data = puzzle_store.serialize_day(session, day)
    assert data['date'] == '2024-06-01'
    assert data['scheduledDate'] == '2024-06-01T04:00:00Z'
    assert data['pairCount'] == 1
    assert data['pairs'][0]['metadata']['width'] == 640


def test_datetimes_round_trip_as_utc(engine, session):
    puzzle_store.append_pair(session, '2024-06-01', make_pair(0))
    image = puzzle_store.stage_pending_image(session, 'https://img/h.png', 'h-1')
    puzzle_store.mark_image_used(session, image.id)

    # a fresh session reads the rows back from the database
    with Session(engine) as fresh:
        day = puzzle_store.require_day(fresh, '2024-06-01')
        assert civil_day.from_storage(day.scheduled_date) == civil_day.canonical_day_instant('2024-06-01')
        assert civil_day.key_for_instant(civil_day.from_storage(day.scheduled_date)) == '2024-06-01'
        assert puzzle_store.serialize_day(fresh, day)['scheduledDate'] == '2024-06-01T04:00:00Z'
        # range lookups match rows written with aware values
        assert puzzle_store.find_day(fresh, civil_day.utc_range_for_day('2024-06-01')).id == day.id
        stored = fresh.get(models.PendingImage, image.id)
        assert stored.used is True
        used_at = civil_day.from_storage(stored.used_at)
        assert abs((used_at - datetime.datetime.now(datetime.timezone.utc)).total_seconds()) < 60


def test_timestamps_are_written_aware():
    assert models._utcnow().tzinfo is not None


def test_status_listing_and_delete(session):
    fill(session, '2024-06-01', 1)
    fill(session, '2024-06-03', 2)
    fill(session, '2024-05-30', 1)

    with pytest.raises(ValueError):
        puzzle_store.set_status(session, '2024-06-01', 'archived')
    assert puzzle_store.set_status(session, '2024-06-01', 'live').status == 'live'

    days = puzzle_store.list_days(session, '2024-06-01')
    assert [d.day_key for d in days] == ['2024-06-01', '2024-06-03']

    puzzle_store.delete_day(session, '2024-06-03')
    assert puzzle_store.get_day(session, '2024-06-03') is None
    with pytest.raises(NotFound):
        puzzle_store.delete_day(session, '2024-06-03')


def test_pending_image_staging(session):
    a = puzzle_store.stage_pending_image(session, 'https://img.example/a.jpg', 'a', 800, 600)
    b = puzzle_store.stage_pending_image(session, 'https://img.example/b.jpg', 'b')
    assert puzzle_store.count_unused_images(session) == 2
    assert [i.id for i in puzzle_store.oldest_unused_images(session)] == [a.id, b.id]

    used = puzzle_store.mark_image_used(session, a.id)
    assert used.used is True and used.used_at is not None
    assert [i.id for i in puzzle_store.oldest_unused_images(session)] == [b.id]
    assert puzzle_store.count_unused_images(session) == 1
    with pytest.raises(NotFound):
        puzzle_store.mark_image_used(session, 9999)
    with pytest.raises(ImageAlreadyUsed):
        puzzle_store.mark_image_used(session, a.id)


def test_append_consumes_staged_image_in_same_commit(session):
    image = puzzle_store.stage_pending_image(session, 'https://img.example/h.jpg', 'h')
    day = puzzle_store.append_pair(session, '2024-06-01', make_pair(0), image_id=image.id)
    assert day.pair_count == 1
    session.refresh(image)
    assert image.used is True and image.used_at is not None


def test_append_with_spent_image_writes_nothing(session):
    image = puzzle_store.stage_pending_image(session, 'https://img.example/h.jpg', 'h')
    puzzle_store.mark_image_used(session, image.id)

    with pytest.raises(ImageAlreadyUsed):
        puzzle_store.append_pair(session, '2024-06-01', make_pair(0), image_id=image.id)
    # the capacity bump and the pair row were rolled back with the claim
    day = puzzle_store.require_day(session, '2024-06-01')
    assert day.pair_count == 0
    assert puzzle_store.list_pairs(session, day) == []

    with pytest.raises(NotFound):
        puzzle_store.append_pair(session, '2024-06-01', make_pair(1), image_id=9999)
    assert puzzle_store.require_day(session, '2024-06-01').pair_count == 0
