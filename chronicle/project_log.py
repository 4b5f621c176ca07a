"""Project-local log mirroring.

When a project directory carries a ``.chronicle`` file with
``local_logging = true``, each new entry is also appended to a dated log
file inside the project, as Markdown or JSON lines.
"""

import json
import logging
from pathlib import Path

from .config import find_project_root, load_project_config
from .store.entries import Entry

logger = logging.getLogger(__name__)


def format_markdown(entry: Entry) -> str:
    """Render an entry as a Markdown block."""
    local = entry.timestamp.astimezone()
    lines = [f"## {local:%H:%M:%S} - {entry.message}"]
    if entry.tags:
        lines.append(f"- **Tags**: {', '.join(entry.tags)}")
    lines.append(f"- **User**: {entry.username}@{entry.hostname}")
    lines.append(f"- **Directory**: {entry.working_directory}")
    return "\n".join(lines) + "\n\n"


def format_json(entry: Entry) -> str:
    return json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"


def write_project_log(log_dir: str | Path, fmt: str, entry: Entry) -> Path:
    """Append an entry to ``<log_dir>/<YYYY-MM-DD>.log``.

    The file is chosen by the entry's local date. Unknown formats fall back
    to Markdown.

    Args:
        log_dir: Directory holding the daily log files. Created if missing.
        fmt: "markdown" or "json".
        entry: Entry to write. Must carry a timestamp.

    Returns:
        Path of the file written.

    Raises:
        ValueError: If the entry has no timestamp.
        OSError: If the directory or file cannot be written.
    """
    if entry.timestamp is None:
        raise ValueError("entry timestamp is missing")

    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    log_file = directory / f"{entry.timestamp.astimezone():%Y-%m-%d}.log"
    content = format_json(entry) if fmt == "json" else format_markdown(entry)

    with open(log_file, "a", encoding="utf-8") as f:
        f.write(content)

    return log_file


def mirror_entry(entry: Entry, start_dir: str | Path) -> Path | None:
    """Mirror an entry into the enclosing project's log, if one is enabled.

    Returns:
        Path of the file written, or None when no project enables local
        logging.

    Raises:
        OSError, ValueError, tomllib.TOMLDecodeError: Callers treat these
            as warnings.
    """
    root = find_project_root(start_dir)
    if root is None:
        return None

    project = load_project_config(root / ".chronicle")
    if not project.local_logging:
        return None

    path = write_project_log(root / project.log_dir, project.log_format, entry)
    logger.debug(f"Mirrored entry {entry.id} to {path}")
    return path
