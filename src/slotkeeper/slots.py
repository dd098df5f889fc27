import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

MODE_PLACEHOLDER = "placeholder"
MODE_STATIC = "static"
MODE_UNMANAGED = "unmanaged"
MANAGED_MODES = (MODE_PLACEHOLDER, MODE_STATIC)

PLACEHOLDER_STATUSES = ("empty", "error")


@dataclass(frozen=True)
class SlotEntry:
    slot: str
    port: int | None
    mode: str
    static_root: Path | None = None
    spa: bool = False

    @property
    def managed(self) -> bool:
        return self.mode in MANAGED_MODES and self.port is not None

    def describe(self) -> dict[str, Any]:
        return {
            "slot": self.slot,
            "port": self.port,
            "mode": self.mode,
            "static_root": str(self.static_root) if self.static_root else None,
            "spa": self.spa,
        }


def _parse_port(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and 0 < value < 65536:
        return value
    return None


def is_directory(path: Path) -> bool:
    """``Path.is_dir`` that also treats unreadable or invalid paths as missing."""
    try:
        return path.is_dir()
    except (OSError, ValueError) as exc:
        logging.warning("Cannot inspect %.200s: %s", path, exc)
        return False


def has_static_root(static_root: Any) -> bool:
    if not static_root or not isinstance(static_root, str):
        return False
    root = Path(static_root)
    if not is_directory(root):
        return False
    try:
        return (root / "index.html").is_file()
    except (OSError, ValueError) as exc:
        logging.warning("Cannot inspect %.200s: %s", root, exc)
        return False


def classify(slot_id: str, record: Any) -> SlotEntry:
    """Map one slot record to the serving mode of its port.

    Only ``placeholder`` and ``static`` entries get a listener; a deployed
    application process or a stopped slot owns its port outside this daemon.
    """
    if not isinstance(record, dict):
        logging.warning("[%s] Slot record is not an object, leaving unmanaged", slot_id)
        return SlotEntry(slot=slot_id, port=None, mode=MODE_UNMANAGED)

    port = _parse_port(record.get("port"))
    status = record.get("status")

    if status in PLACEHOLDER_STATUSES:
        mode = MODE_PLACEHOLDER
    elif status == "deployed":
        static_root = record.get("static_root")
        if record.get("type") == "static" or has_static_root(static_root):
            mode = MODE_STATIC
        else:
            mode = MODE_UNMANAGED
    else:
        mode = MODE_UNMANAGED

    if mode != MODE_UNMANAGED and port is None:
        logging.warning(
            "[%s] Invalid port %r for %s slot, leaving unmanaged",
            slot_id,
            record.get("port"),
            mode,
        )
        return SlotEntry(slot=slot_id, port=None, mode=MODE_UNMANAGED)

    if mode == MODE_STATIC:
        static_root = record.get("static_root")
        return SlotEntry(
            slot=slot_id,
            port=port,
            mode=MODE_STATIC,
            static_root=Path(static_root) if isinstance(static_root, str) and static_root else None,
            spa=bool(record.get("spa_mode")),
        )
    return SlotEntry(slot=slot_id, port=port, mode=mode)


def managed_entries(doc: dict[str, Any]) -> dict[int, SlotEntry]:
    """Desired listeners keyed by port. The first slot to claim a port wins."""
    desired: dict[int, SlotEntry] = {}
    for slot_id, record in (doc.get("slots") or {}).items():
        entry = classify(slot_id, record)
        if not entry.managed:
            continue
        owner = desired.get(entry.port)
        if owner is not None:
            logging.error(
                "[%s] ERROR port %s already claimed by slot %s, skipping",
                slot_id,
                entry.port,
                owner.slot,
            )
            continue
        desired[entry.port] = entry
    return desired
