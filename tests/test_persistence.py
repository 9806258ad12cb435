# tests/test_persistence.py
import os

from canvas.tokens import TokenData, TokenStore, token_preview
from jobs.models import Job, JobStatus, Pattern, PatternPixel
from jobs.store import QueueStore


def test_queue_store_round_trip_resets_in_progress(tmp_path):
    store = QueueStore(str(tmp_path / "state" / "queue.json"))
    running = Job(
        pattern=Pattern("heart", [PatternPixel(0, 0, 2), PatternPixel(1, 0, 3)], board_x=10, board_y=20),
        priority=1,
        status=JobStatus.IN_PROGRESS,
        pixels_placed=1,
        pixels_total=2,
    )
    done = Job(pattern=Pattern("dot", [PatternPixel(0, 0, 1)]), status=JobStatus.COMPLETE, paused=True)

    store.save([running, done])
    loaded = store.load()

    assert [j.id for j in loaded] == [running.id, done.id]
    assert loaded[0].status == JobStatus.PENDING
    assert loaded[0].pattern.pixels == running.pattern.pixels
    assert (loaded[0].pattern.board_x, loaded[0].pattern.board_y) == (10, 20)
    assert loaded[1].status == JobStatus.COMPLETE
    assert loaded[1].paused is True
    assert not (tmp_path / "state" / "queue.json.tmp").exists()


def test_queue_store_missing_file(tmp_path):
    store = QueueStore(str(tmp_path / "queue.json"))
    assert store.exists() is False
    assert store.load() == []


def test_pattern_accepts_alternate_colour_keys():
    p = Pattern.from_dict({"name": "x", "pixels": [{"x": 0, "y": 1, "colorId": 4}, {"x": 2, "y": 3, "color_id": 5}]})
    assert p.pixels == [PatternPixel(0, 1, 4), PatternPixel(2, 3, 5)]


def test_token_store_update_and_permissions(tmp_path):
    store = TokenStore(tmp_path / "tokens.json")

    store.update(access_token="abc", refresh_token="def", base_url="http://canvas.test")
    store.on_credentials_changed("new", "def")

    data = store.load()
    assert data == TokenData("new", "def", "http://canvas.test")
    if os.name == "posix":
        assert (tmp_path / "tokens.json").stat().st_mode & 0o777 == 0o600


def test_token_store_unreadable_file_starts_fresh(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text("{not json")
    assert TokenStore(path).load() == TokenData()


def test_token_store_clear(tmp_path):
    store = TokenStore(tmp_path / "tokens.json")
    store.save(TokenData(access_token="abc"))
    store.clear()
    assert not (tmp_path / "tokens.json").exists()
    assert store.load() == TokenData()


def test_token_preview():
    assert token_preview(None) == "<none>"
    assert token_preview("abcdefghijklmnop") == "abcdefghij..."
    assert token_preview("short") == "short"
