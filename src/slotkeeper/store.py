import json
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

SLOT_IDS = ("a", "b", "c", "d", "e")
SLOT_ID_PATTERN = re.compile(r"^[a-e]$")
BASE_PORT = 3000
SLOT_STATUSES = ("empty", "deployed", "error", "stopped")
SLOT_TYPES = ("nodejs", "static")

LOCK_RETRY_COUNT = 30
LOCK_RETRY_DELAY_SECONDS = 0.1
LOCK_MAX_DELAY_SECONDS = 1.0
LOCK_STALE_SECONDS = 60.0


class SlotConfigError(ValueError):
    pass


class LockTimeoutError(TimeoutError):
    """Raised when the configuration lock cannot be acquired in time."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_port(slot_id: str) -> int:
    return BASE_PORT + SLOT_IDS.index(slot_id) + 1


def default_document() -> dict[str, Any]:
    slots = {}
    for slot_id in SLOT_IDS:
        slots[slot_id] = {
            "subdomain": os.environ.get(f"SLOT_{slot_id.upper()}_SUBDOMAIN", slot_id),
            "repository": "",
            "branch": "main",
            "environment": {},
            "status": "empty",
            "port": default_port(slot_id),
        }
    return {"slots": slots, "last_updated": utc_now_iso()}


def validate_slot_id(slot_id: str) -> str:
    if not isinstance(slot_id, str) or not SLOT_ID_PATTERN.match(slot_id):
        raise SlotConfigError(
            f"Invalid slot name: {slot_id}. Must be one of: {', '.join(SLOT_IDS)}"
        )
    return slot_id


def validate_slots_document(doc: Any) -> list[str]:
    errors: list[str] = []
    if not isinstance(doc, dict):
        return ["Document must be a JSON object"]
    slots = doc.get("slots")
    if not isinstance(slots, dict):
        return ["slots must be an object"]

    seen_ports: dict[int, str] = {}
    for slot_id, record in slots.items():
        if not isinstance(record, dict):
            errors.append(f"[{slot_id}] slot must be an object")
            continue
        status = record.get("status")
        if status not in SLOT_STATUSES:
            errors.append(f"[{slot_id}] unknown status {status!r}")
        slot_type = record.get("type")
        if slot_type is not None and slot_type not in SLOT_TYPES:
            errors.append(f"[{slot_id}] unknown type {slot_type!r}")
        port = record.get("port")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            errors.append(f"[{slot_id}] port must be an integer in 1..65535")
        elif port in seen_ports:
            errors.append(
                f"[{slot_id}] port {port} already used by slot {seen_ports[port]}"
            )
        else:
            seen_ports[port] = slot_id
        if "spa_mode" in record and not isinstance(record["spa_mode"], bool):
            errors.append(f"[{slot_id}] spa_mode must be a boolean")
        count = record.get("deploy_count", 0)
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            errors.append(f"[{slot_id}] deploy_count must be a non-negative integer")
        env = record.get("environment", {})
        if not isinstance(env, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in env.items()
        ):
            errors.append(f"[{slot_id}] environment must map strings to strings")
    return errors


def read_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8-sig") as f:
        doc = json.load(f)
    if not isinstance(doc, dict):
        raise SlotConfigError(f"Config root must be an object: {path}")
    slots = doc.get("slots", {})
    if not isinstance(slots, dict):
        raise SlotConfigError(f"Config 'slots' must be an object: {path}")
    doc["slots"] = slots
    return doc


def write_config_atomic(path: Path, doc: dict[str, Any]) -> None:
    """Write ``doc`` so that readers only ever see the old or the new file.

    The payload goes to a temp file in the same directory, is fsynced and then
    renamed over ``path``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=f".{path.name}.{os.getpid()}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_path = Path(f.name)
            json.dump(doc, f, ensure_ascii=False, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)


def _lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def _break_stale_lock(lock_path: Path, stale_after: float) -> bool:
    """Remove ``lock_path`` if it is older than ``stale_after`` seconds.

    The lock is renamed aside first and checked again there, so a fresh lock
    taken by another process between the age check and the removal is put
    back instead of deleted.
    """
    try:
        before = lock_path.stat()
    except FileNotFoundError:
        return False
    age = time.time() - before.st_mtime
    if age < stale_after:
        return False

    aside = lock_path.with_name(f"{lock_path.name}.stale.{os.getpid()}.{time.monotonic_ns()}")
    try:
        os.rename(lock_path, aside)
    except FileNotFoundError:
        # another process broke it first
        return True
    try:
        moved = aside.stat()
        if moved.st_ino != before.st_ino or time.time() - moved.st_mtime < stale_after:
            try:
                os.link(aside, lock_path)
            except FileExistsError:
                logging.warning("Config lock %s was replaced while being restored", lock_path)
            return False
    finally:
        aside.unlink(missing_ok=True)
    logging.warning("Breaking stale config lock %s (age %.1fs)", lock_path, age)
    return True


@contextmanager
def config_lock(
    path: Path,
    retries: int = LOCK_RETRY_COUNT,
    delay_seconds: float = LOCK_RETRY_DELAY_SECONDS,
    stale_after: float = LOCK_STALE_SECONDS,
) -> Iterator[Path]:
    """Hold the cooperative ``<path>.lock`` file for a read-modify-write.

    The lock file is created with O_CREAT | O_EXCL, the protocol shared with
    the deploy scripts. Attempts back off exponentially up to
    ``LOCK_MAX_DELAY_SECONDS``; after ``retries`` failures ``LockTimeoutError``
    is raised.
    """
    if retries <= 0:
        raise ValueError(f"retries must be > 0 (got {retries})")
    lock_path = _lock_path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    delay = delay_seconds
    attempts = 0
    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            break
        except FileExistsError:
            # breaking a stale lock does not use up an attempt
            if _break_stale_lock(lock_path, stale_after):
                continue
            attempts += 1
            if attempts >= retries:
                raise LockTimeoutError(
                    f"failed to acquire lock {lock_path} after {retries} attempts"
                ) from None
            time.sleep(delay)
            delay = min(delay * 2, LOCK_MAX_DELAY_SECONDS)

    try:
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        yield path
    finally:
        os.close(fd)
        lock_path.unlink(missing_ok=True)


def update_config(
    path: Path,
    mutator: Callable[[dict[str, Any]], dict[str, Any] | None],
    retries: int = LOCK_RETRY_COUNT,
    delay_seconds: float = LOCK_RETRY_DELAY_SECONDS,
) -> dict[str, Any]:
    with config_lock(path, retries=retries, delay_seconds=delay_seconds):
        current = read_config(path)
        updated = mutator(current)
        if updated is None:
            updated = current
        updated["last_updated"] = utc_now_iso()
        write_config_atomic(path, updated)
    return updated


def _check_port_assignment(
    slots: dict[str, Any], slot_id: str, current: Any, port: Any
) -> None:
    # The port joins a slot to its listener, so it is unique and never reassigned.
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise SlotConfigError(f"[{slot_id}] port must be an integer in 1..65535 (got {port!r})")
    if current is not None and current != port:
        raise SlotConfigError(f"[{slot_id}] port is already assigned ({current}), cannot change to {port}")
    for other_id, other in slots.items():
        if other_id != slot_id and isinstance(other, dict) and other.get("port") == port:
            raise SlotConfigError(f"[{slot_id}] port {port} already used by slot {other_id}")


def set_slot(
    path: Path,
    slot_id: str,
    patch: dict[str, Any],
    inc_deploy_count: bool = False,
    **lock_options: Any,
) -> dict[str, Any]:
    validate_slot_id(slot_id)
    ts = utc_now_iso()

    def _apply(cfg: dict[str, Any]) -> dict[str, Any]:
        slots = cfg.setdefault("slots", {})
        slot = dict(slots.get(slot_id) or {})
        if "port" in patch:
            _check_port_assignment(slots, slot_id, slot.get("port"), patch["port"])
        slot.update(patch)
        if inc_deploy_count:
            slot["deploy_count"] = int(slot.get("deploy_count") or 0) + 1
        slot["last_status_change"] = ts
        slots[slot_id] = slot
        return cfg

    return update_config(path, _apply, **lock_options)["slots"][slot_id]


def set_slot_status(
    path: Path, slot_id: str, status: str, **extra: Any
) -> dict[str, Any]:
    if status not in SLOT_STATUSES:
        raise SlotConfigError(f"Unknown slot status: {status}")
    return set_slot(path, slot_id, {"status": status, **extra})


def increment_deploy_count(path: Path, slot_id: str, **lock_options: Any) -> int:
    validate_slot_id(slot_id)

    def _apply(cfg: dict[str, Any]) -> dict[str, Any]:
        slot = cfg.setdefault("slots", {}).setdefault(slot_id, {})
        slot["deploy_count"] = int(slot.get("deploy_count") or 0) + 1
        return cfg

    return update_config(path, _apply, **lock_options)["slots"][slot_id]["deploy_count"]


def reset_slot(path: Path, slot_id: str, **lock_options: Any) -> dict[str, Any]:
    """Put a slot back into the placeholder state, keeping its port and repo."""
    validate_slot_id(slot_id)
    ts = utc_now_iso()

    def _apply(cfg: dict[str, Any]) -> dict[str, Any]:
        slots = cfg.setdefault("slots", {})
        if slot_id not in slots:
            raise SlotConfigError(f"Slot not found: {slot_id}")
        slot = slots[slot_id]
        for key in ("type", "static_root", "spa_mode"):
            slot.pop(key, None)
        slot["status"] = "empty"
        slot["last_status_change"] = ts
        return cfg

    return update_config(path, _apply, **lock_options)["slots"][slot_id]


def get_slot_port(path: Path, slot_id: str) -> int | None:
    slot = read_config(path)["slots"].get(slot_id)
    if not isinstance(slot, dict):
        return None
    return slot.get("port")


def initialize_config(path: Path) -> bool:
    """Create the default document. Returns False when one already exists."""
    with config_lock(path):
        if path.exists():
            return False
        write_config_atomic(path, default_document())
    logging.info("Initialized slot configuration at %s", path)
    return True
