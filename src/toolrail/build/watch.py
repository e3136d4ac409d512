"""Development rebuild loop: recompile when a tool source file changes.

Polls file stamps (modification time and size) of every ``.py``,
``.json`` and ``.md`` file inside the tool directories. Private and
hidden directories are skipped, as they are by the compiler, and the
artifact itself sits outside any tool directory so writing it never
triggers another build.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from toolrail.build.compiler import discover_tool_dirs

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger(__name__)

WATCHED_SUFFIXES = (".py", ".json", ".md")
DEFAULT_INTERVAL_S = 0.5


def source_stamps(tools_dir: Path) -> dict[Path, tuple[int, int]]:
    """``(mtime_ns, size)`` of every watched file under *tools_dir*."""
    stamps: dict[Path, tuple[int, int]] = {}
    if not tools_dir.is_dir():
        return stamps
    for tool_dir in discover_tool_dirs(tools_dir):
        for path in tool_dir.rglob("*"):
            relative = path.relative_to(tool_dir).parts
            if any(part.startswith(("_", ".")) for part in relative):
                continue
            if path.suffix not in WATCHED_SUFFIXES or not path.is_file():
                continue
            stat = path.stat()
            stamps[path] = (stat.st_mtime_ns, stat.st_size)
    return stamps


def changed_paths(
    before: dict[Path, tuple[int, int]],
    after: dict[Path, tuple[int, int]],
) -> list[Path]:
    """Files added, removed or modified between two stamp sets."""
    return sorted(p for p in before.keys() | after.keys() if before.get(p) != after.get(p))


def watch_tools(
    tools_dir: Path,
    rebuild: Callable[[], object],
    *,
    interval: float = DEFAULT_INTERVAL_S,
    should_stop: Callable[[], bool] = lambda: False,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Call *rebuild* after each change under *tools_dir* until stopped.

    A change is acted on once the files have been quiet for one
    *interval*, so an editor writing several files triggers one build.

    Returns:
        The number of rebuilds run.
    """
    stamps = source_stamps(tools_dir)
    rebuilds = 0
    while not should_stop():
        sleep(interval)
        current = source_stamps(tools_dir)
        if current == stamps:
            continue
        # Wait for writes to settle
        while True:
            sleep(interval)
            settled = source_stamps(tools_dir)
            if settled == current:
                break
            current = settled
        changed = changed_paths(stamps, current)
        logger.info(
            "Change detected in %s",
            ", ".join(str(p.relative_to(tools_dir)) for p in changed),
        )
        stamps = current
        rebuild()
        rebuilds += 1
    return rebuilds
