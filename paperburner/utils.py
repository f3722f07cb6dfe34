"""Cross-cutting helpers: constants, file names, session state I/O."""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .models import FileStatus

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STATE_FILE_NAME = "paperburner_state.json"
MAX_FILE_NAME_LENGTH = 200

_ILLEGAL_CHARS_RE = re.compile(r'[/\\:*?"<>|]')
_WHITESPACE_RE = re.compile(r"\s+")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# File names
# ---------------------------------------------------------------------------


def sanitize_file_name(name: str) -> str:
    """Replace characters that are illegal in file names and trim length."""
    cleaned = _ILLEGAL_CHARS_RE.sub("_", name)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return cleaned[:MAX_FILE_NAME_LENGTH]


def strip_pdf_suffix(name: str) -> str:
    return name[:-4] if name.lower().endswith(".pdf") else name


def generate_file_names(original: str, translated: Optional[str] = None) -> dict[str, str]:
    """Output names for a document, using *translated* for translation files."""
    base = strip_pdf_suffix(original)
    target = translated or base
    return {
        "markdown": f"{base}.md",
        "translation": f"{target}.md",
        "epub": f"{base}.epub",
        "translation_epub": f"{target}.epub",
    }


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------


def file_fingerprint(path: Path) -> dict[str, int]:
    """Return a cheap fingerprint for local change detection."""
    stat = path.stat()
    return {
        "size": stat.st_size,
        "mtime_ns": stat.st_mtime_ns,
    }


def is_unchanged_file(path: Path, previous: dict[str, Any] | None) -> bool:
    """Check whether *path* matches a previous successful state entry."""
    if not previous or previous.get("status") != FileStatus.COMPLETED.value:
        return False
    current = file_fingerprint(path)
    return (
        previous.get("size") == current["size"]
        and previous.get("mtime_ns") == current["mtime_ns"]
    )


# ---------------------------------------------------------------------------
# State file I/O
# ---------------------------------------------------------------------------


def _empty_state() -> dict[str, Any]:
    return {"sessions": {}, "files": {}}


def load_state(path: Path) -> dict[str, Any]:
    """Load persistent state; unreadable or malformed files start fresh."""
    if not path.exists():
        return _empty_state()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            state = json.load(fh)
    except (json.JSONDecodeError, OSError, ValueError):
        log.warning("State file %s unreadable, starting fresh", path)
        return _empty_state()

    if not isinstance(state, dict):
        return _empty_state()
    for section in ("sessions", "files"):
        if not isinstance(state.get(section), dict):
            state[section] = {}
    return state


def save_state(path: Path, state: dict[str, Any]) -> Path:
    """Persist state and return the state file path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(state, fh, indent=2, ensure_ascii=False, default=str)
    return path


class SessionStore:
    """Processing-session records plus per-file resume fingerprints.

    With ``path=None`` everything stays in memory. Otherwise every change
    is written through to the JSON file.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._state = load_state(path) if path is not None else _empty_state()

    @classmethod
    def in_dir(cls, output_dir: Path) -> "SessionStore":
        return cls(output_dir / STATE_FILE_NAME)

    def _flush(self) -> None:
        if self.path is not None:
            save_state(self.path, self._state)

    # -- sessions ----------------------------------------------------------

    def create_session(self, file_name: str, file_path: str = "") -> str:
        session_id = uuid.uuid4().hex[:16]
        self._state["sessions"][session_id] = {
            "id": session_id,
            "file_name": file_name,
            "file_path": file_path,
            "status": FileStatus.PENDING.value,
            "progress": 0,
            "created_at": _now(),
            "updated_at": _now(),
            "checkpoints": [],
            "result": None,
        }
        self._flush()
        return session_id

    def update_record(self, session_id: str, **changes: Any) -> dict[str, Any]:
        record = self._state["sessions"].get(session_id)
        if record is None:
            raise KeyError(f"unknown session: {session_id}")
        status = changes.get("status")
        if isinstance(status, FileStatus):
            changes["status"] = status.value
        record.update(changes)
        record["updated_at"] = _now()
        self._flush()
        return record

    def load_record(self, session_id: str) -> Optional[dict[str, Any]]:
        return self._state["sessions"].get(session_id)

    def record_checkpoint(self, session_id: str, step: str, **data: Any) -> None:
        record = self._state["sessions"].get(session_id)
        if record is None:
            return
        record["checkpoints"].append({"step": step, "at": _now(), **data})
        record["updated_at"] = _now()
        self._flush()

    def sessions(self) -> list[dict[str, Any]]:
        return list(self._state["sessions"].values())

    # -- resume ------------------------------------------------------------

    def previous_file(self, path: Path) -> Optional[dict[str, Any]]:
        return self._state["files"].get(str(path.resolve()))

    def remember_file(self, path: Path, status: str, error: Optional[str] = None) -> None:
        entry: dict[str, Any] = {
            "filename": path.name,
            "status": status,
            "processed_at": _now(),
        }
        if path.exists():
            try:
                entry.update(file_fingerprint(path))
            except OSError:
                pass
        if error:
            entry["error"] = error[:500]
        self._state["files"][str(path.resolve())] = entry
        self._flush()

    def is_processed(self, path: Path) -> bool:
        return is_unchanged_file(path, self.previous_file(path))
