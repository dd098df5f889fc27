import json
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from slotkeeper.store import (
    LockTimeoutError,
    SlotConfigError,
    _break_stale_lock,
    config_lock,
    default_document,
    increment_deploy_count,
    initialize_config,
    read_config,
    reset_slot,
    set_slot,
    set_slot_status,
    get_slot_port,
    validate_slots_document,
    write_config_atomic,
)


def test_initialize_config_creates_default_slots_once(tmp_path) -> None:
    path = tmp_path / "config" / "slots.json"

    assert initialize_config(path) is True
    assert initialize_config(path) is False

    doc = read_config(path)
    assert sorted(doc["slots"]) == ["a", "b", "c", "d", "e"]
    assert [doc["slots"][s]["port"] for s in "abcde"] == [3001, 3002, 3003, 3004, 3005]
    assert all(slot["status"] == "empty" for slot in doc["slots"].values())
    assert not (tmp_path / "config" / "slots.json.lock").exists()


def test_write_config_atomic_leaves_no_temp_files(tmp_path) -> None:
    path = tmp_path / "slots.json"
    write_config_atomic(path, {"slots": {"a": {"status": "empty", "port": 3001}}})
    write_config_atomic(path, {"slots": {"a": {"status": "error", "port": 3001}}})

    assert [p.name for p in tmp_path.iterdir()] == ["slots.json"]
    assert json.loads(path.read_text(encoding="utf-8"))["slots"]["a"]["status"] == "error"


def test_read_config_rejects_non_object_slots(tmp_path) -> None:
    path = tmp_path / "slots.json"
    path.write_text(json.dumps({"slots": ["a"]}), encoding="utf-8")

    with pytest.raises(SlotConfigError):
        read_config(path)


def test_read_config_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        read_config(tmp_path / "nope.json")


def test_set_slot_merges_patch_and_stamps_times(tmp_path) -> None:
    path = tmp_path / "slots.json"
    initialize_config(path)

    slot = set_slot(
        path,
        "b",
        {"status": "deployed", "type": "static", "static_root": "/srv/site"},
        inc_deploy_count=True,
    )

    assert slot["port"] == 3002
    assert slot["repository"] == ""
    assert slot["static_root"] == "/srv/site"
    assert slot["deploy_count"] == 1
    assert "last_status_change" in slot
    assert read_config(path)["last_updated"]


def test_set_slot_rejects_unknown_slot_id(tmp_path) -> None:
    path = tmp_path / "slots.json"
    initialize_config(path)

    with pytest.raises(SlotConfigError):
        set_slot(path, "z", {"status": "empty"})


def test_set_slot_rejects_port_owned_by_another_slot(tmp_path) -> None:
    path = tmp_path / "slots.json"
    write_config_atomic(path, {"slots": {"a": {"status": "empty", "port": 3001}, "b": {"status": "empty"}}})

    with pytest.raises(SlotConfigError, match="already used by slot a"):
        set_slot(path, "b", {"port": 3001})

    doc = read_config(path)
    assert "port" not in doc["slots"]["b"]
    assert not (tmp_path / "slots.json.lock").exists()
    assert set_slot(path, "b", {"port": 3002})["port"] == 3002


def test_set_slot_keeps_assigned_port_immutable(tmp_path) -> None:
    path = tmp_path / "slots.json"
    initialize_config(path)

    with pytest.raises(SlotConfigError, match="already assigned"):
        set_slot(path, "c", {"port": 4003})
    with pytest.raises(SlotConfigError):
        set_slot(path, "c", {"port": "3003"})

    assert get_slot_port(path, "c") == 3003
    assert set_slot(path, "c", {"port": 3003, "status": "error"})["status"] == "error"


def test_set_slot_status_validates_status(tmp_path) -> None:
    path = tmp_path / "slots.json"
    initialize_config(path)

    assert set_slot_status(path, "a", "error", last_error="build failed")["status"] == "error"
    with pytest.raises(SlotConfigError):
        set_slot_status(path, "a", "running")


def test_reset_slot_restores_placeholder_state(tmp_path) -> None:
    path = tmp_path / "slots.json"
    initialize_config(path)
    set_slot(
        path,
        "c",
        {"status": "deployed", "type": "static", "static_root": "/x", "spa_mode": True, "repository": "r"},
    )

    slot = reset_slot(path, "c")

    assert slot["status"] == "empty"
    assert slot["port"] == 3003
    assert slot["repository"] == "r"
    assert "static_root" not in slot and "type" not in slot and "spa_mode" not in slot
    assert get_slot_port(path, "c") == 3003
    assert get_slot_port(path, "e") == 3005


def test_config_lock_times_out_when_held(tmp_path) -> None:
    path = tmp_path / "slots.json"
    (tmp_path / "slots.json.lock").write_text("1234\n", encoding="ascii")

    start = time.monotonic()
    with pytest.raises(LockTimeoutError):
        with config_lock(path, retries=3, delay_seconds=0.01):
            pass
    assert time.monotonic() - start < 1.0
    assert (tmp_path / "slots.json.lock").exists()


def test_config_lock_breaks_stale_lock(tmp_path) -> None:
    path = tmp_path / "slots.json"
    lock = tmp_path / "slots.json.lock"
    lock.write_text("1234\n", encoding="ascii")
    old = time.time() - 600
    os.utime(lock, (old, old))

    with config_lock(path, retries=1):
        assert lock.exists()
    assert not lock.exists()


def test_stale_lock_replaced_before_removal_is_kept(tmp_path, monkeypatch) -> None:
    lock = tmp_path / "slots.json.lock"
    lock.write_text("1234\n", encoding="ascii")
    old = time.time() - 600
    os.utime(lock, (old, old))
    real_rename = os.rename

    def _rename_after_fresh_lock(src, dst):
        # another process breaks the stale lock and takes a fresh one first
        os.unlink(src)
        with open(src, "w", encoding="ascii") as f:
            f.write("5678\n")
        real_rename(src, dst)

    monkeypatch.setattr("slotkeeper.store.os.rename", _rename_after_fresh_lock)

    assert _break_stale_lock(lock, stale_after=60) is False
    assert lock.read_text(encoding="ascii") == "5678\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["slots.json.lock"]


def test_config_lock_released_when_body_raises(tmp_path) -> None:
    path = tmp_path / "slots.json"

    with pytest.raises(RuntimeError):
        with config_lock(path):
            raise RuntimeError("boom")

    assert not (tmp_path / "slots.json.lock").exists()


def test_concurrent_increments_are_not_lost(tmp_path) -> None:
    path = tmp_path / "slots.json"
    initialize_config(path)

    with ThreadPoolExecutor(max_workers=8) as pool:
        counts = list(
            pool.map(lambda _: increment_deploy_count(path, "a", delay_seconds=0.005), range(24))
        )

    assert sorted(counts) == list(range(1, 25))
    assert read_config(path)["slots"]["a"]["deploy_count"] == 24


def test_concurrent_writers_never_expose_partial_document(tmp_path) -> None:
    path = tmp_path / "slots.json"
    initialize_config(path)
    stop = threading.Event()
    read_errors: list[Exception] = []

    def _reader() -> None:
        while not stop.is_set():
            try:
                read_config(path)
            except Exception as exc:  # noqa: BLE001
                read_errors.append(exc)

    def _writer(i: int) -> None:
        slot = "abcde"[i % 5]
        set_slot(path, slot, {"repository": f"https://example.com/repo-{i}"}, delay_seconds=0.005)

    reader = threading.Thread(target=_reader)
    reader.start()
    try:
        with ThreadPoolExecutor(max_workers=5) as pool:
            list(pool.map(_writer, range(20)))
    finally:
        stop.set()
        reader.join()

    assert read_errors == []
    doc = read_config(path)
    for i in range(15, 20):
        assert doc["slots"]["abcde"[i % 5]]["repository"].startswith("https://example.com/repo-")
    assert validate_slots_document(doc) == []


def test_validate_slots_document_reports_problems() -> None:
    doc = default_document()
    doc["slots"]["a"]["status"] = "running"
    doc["slots"]["b"]["port"] = 3001
    doc["slots"]["c"]["spa_mode"] = "yes"
    doc["slots"]["d"]["environment"] = {"PORT": 1}

    errors = validate_slots_document(doc)

    assert any(e.startswith("[a] unknown status") for e in errors)
    assert "[b] port 3001 already used by slot a" in errors
    assert "[c] spa_mode must be a boolean" in errors
    assert "[d] environment must map strings to strings" in errors
    assert validate_slots_document([]) == ["Document must be a JSON object"]
