# camwatch/janitor.py
from __future__ import annotations

import asyncio, contextlib, logging, time
from pathlib import Path
from typing import Callable, Dict, Optional

from anyio import to_thread

from .config import settings

log = logging.getLogger("janitor")


class SegmentJanitor:
    """Periodic sweep of HLS output folders left behind by crashed or unclean runs.

    A folder is an orphan when ``is_active(folder_name)`` is false. Orphans
    lose files older than ``max_age`` seconds and are removed once empty.
    Folders of active streams are never touched, whatever their age.
    Filesystem errors are logged and retried on the next sweep.
    """

    def __init__(
        self,
        root: Path,
        is_active: Callable[[str], bool],
        *,
        interval: Optional[float] = None,
        max_age: Optional[float] = None,
    ) -> None:
        self.root = Path(root)
        self.is_active = is_active
        self.interval = float(settings.JANITOR_INTERVAL_SECS if interval is None else interval)
        self.max_age = float(settings.JANITOR_MAX_AGE_SECS if max_age is None else max_age)
        self._task: Optional[asyncio.Task] = None

    # ── sweep ────────────────────────────────────────────────────────────────
    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        now = time.time() if now is None else now
        summary = {"files": 0, "dirs": 0, "errors": 0}
        if not self.root.is_dir():
            return summary
        try:
            entries = sorted(self.root.iterdir())
        except OSError as e:
            log.warning("cannot list %s: %s", self.root, e)
            summary["errors"] += 1
            return summary

        for d in entries:
            if not d.is_dir() or self.is_active(d.name):
                continue
            try:
                summary["files"] += self._purge_old_files(d, now)
                # re-check right before removal: a stream may have claimed the name meanwhile
                if not self.is_active(d.name) and not any(d.iterdir()):
                    d.rmdir()
                    summary["dirs"] += 1
                    log.info("removed orphan HLS dir %s", d.name)
            except OSError as e:
                summary["errors"] += 1
                log.warning("cleanup of %s skipped: %s", d, e)
        return summary

    def _purge_old_files(self, d: Path, now: float) -> int:
        removed = 0
        for fp in d.iterdir():
            if fp.is_dir():
                continue
            if now - fp.stat().st_mtime > self.max_age:
                fp.unlink()
                removed += 1
        return removed

    async def sweep_async(self) -> Dict[str, int]:
        return await to_thread.run_sync(self.sweep)

    # ── loop ─────────────────────────────────────────────────────────────────
    async def _loop(self) -> None:
        while True:
            try:
                summary = await self.sweep_async()
                if summary["files"] or summary["dirs"]:
                    log.info("janitor sweep: %(files)d files, %(dirs)d dirs removed", summary)
            except Exception as e:
                log.warning("janitor sweep error: %s", e)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
