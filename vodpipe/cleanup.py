"""
Best-effort removal of transcode scratch space.

Nothing in here raises: every failure is logged and the sweep carries on
with the next path.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Iterable, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Thread pool for file I/O so large deletions don't block the event loop
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="vodpipe_io")


def _remove(path: Path) -> bool:
    """Remove one file or directory tree. Returns True if `path` is gone."""
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
            return True
        if path.is_dir():
            for child in path.iterdir():
                _remove(child)
            path.rmdir()
            return True
    except OSError as e:
        logger.warning(f"[Cleanup] Failed to remove {path}: {e}")
    return False


def cleanup(*paths: PathLike) -> int:
    """
    Delete files and directory trees.

    Missing paths are skipped silently. Returns how many of the given paths
    were actually removed.
    """
    removed = 0
    for raw in paths:
        if raw is None:
            continue
        path = Path(raw)
        if not path.exists() and not path.is_symlink():
            continue
        if _remove(path):
            removed += 1
            logger.debug(f"[Cleanup] Removed {path}")
    return removed


async def cleanup_async(*paths: PathLike) -> int:
    """`cleanup` on the I/O thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, lambda: cleanup(*paths))


@asynccontextmanager
async def scratch_dir(root: PathLike, job_id: str) -> AsyncIterator[Path]:
    """
    Per-job working directory under `root`, removed on every exit path.

    Usage:
        async with scratch_dir(temp_root, job_id) as work:
            ...
    """
    path = Path(root) / job_id
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        await cleanup_async(path)
        logger.info(f"[Cleanup] Released scratch directory {path}")


def cleanup_orphaned(root: PathLike, active_ids: Iterable[str] = ()) -> int:
    """Remove scratch directories under `root` that belong to no active job."""
    root = Path(root)
    if not root.exists():
        return 0

    active = set(active_ids)
    cleaned = 0
    for item in root.iterdir():
        if item.is_dir() and item.name not in active:
            if _remove(item):
                cleaned += 1
                logger.info(f"[Cleanup] Removed orphaned scratch dir: {item.name}")

    if cleaned > 0:
        logger.info(f"[Cleanup] Cleaned up {cleaned} orphaned scratch dir(s)")

    return cleaned
