"""
Import a file or directory tree into a blob store as a collection.

The returned pin always refers to a collection. A single file becomes a
one-entry collection named like the file; a directory becomes a collection
whose names are prefixed with the directory's own name.
"""

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union
import logging

from .collection import Collection
from .content_addressing import Hash, HashAndFormat
from .errors import NotFoundError, SourceChangedError
from .paths import encode_path

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Outcome of an import: the collection and the pins that keep it alive."""
    collection: Collection
    tags: List = field(default_factory=list)

    @property
    def tag(self):
        """Pin on the stored collection."""
        return self.tags[0]

    @property
    def content(self) -> HashAndFormat:
        return self.tag.content

    def release(self):
        for tag in self.tags:
            tag.release()


def default_parallelism() -> int:
    """Number of concurrent hashing operations: one per CPU."""
    return os.cpu_count() or 1


def walk_files(root: Path) -> Iterator[Path]:
    """
    Yield every regular file below ``root``.

    Directories are descended into; symbolic links (to files or
    directories) are skipped, never followed. If ``root`` is a file it is
    the only result.
    """
    if root.is_file():
        yield root
        return
    stack = [root]
    while stack:
        directory = stack.pop()
        with os.scandir(directory) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    stack.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False):
                    yield Path(entry.path)


def collect_sources(root: Path) -> List[Tuple[str, Path]]:
    """
    Flatten ``root`` into (manifest name, file path) pairs.

    Names are relative to ``root``'s parent.

    Raises:
        InvalidPathError: If a path component can't be encoded
    """
    base = root.parent
    return [(encode_path(path.relative_to(base), True), path) for path in walk_files(root)]


async def _add_file(store, name: str, path: Path, semaphore: asyncio.Semaphore):
    async with semaphore:
        try:
            before = path.stat()
            tag = await store.add_path(path)
            after = path.stat()
        except FileNotFoundError:
            raise SourceChangedError(path, "disappeared during import") from None
        if (before.st_size, before.st_mtime_ns) != (after.st_size, after.st_mtime_ns):
            tag.release()
            raise SourceChangedError(path, "was modified during import")
        logger.info(f"adding {name}")
        return name, tag


async def import_path(
    path: Union[str, Path],
    store,
    parallelism: Optional[int] = None,
) -> ImportResult:
    """
    Import a file or directory into ``store``.

    Files are hashed concurrently, at most ``parallelism`` at a time. The
    (name, hash) pairs are sorted by name so that importing an unchanged tree
    always yields the same collection hash. The per-file pins are held until
    the collection itself is stored and pinned, then released: from that
    point on the collection protects its entries.

    Args:
        path: File or directory to import
        store: LocalBlobStore (or compatible) to import into
        parallelism: Max concurrent hashing operations (default: CPU count)

    Returns:
        ImportResult whose ``tag`` pins the stored collection

    Raises:
        NotFoundError: If ``path`` does not exist
        SourceChangedError: If a file vanished or changed mid-import
        InvalidPathError: If a path can't be encoded as a manifest name
        OSError: On any other I/O error (no partial collection is stored)
    """
    try:
        root = Path(path).resolve(strict=True)
    except FileNotFoundError:
        raise NotFoundError(path) from None

    parallelism = parallelism or default_parallelism()
    data_sources = collect_sources(root)
    logger.debug(f"Importing {len(data_sources)} files from {root} (parallelism={parallelism})")

    semaphore = asyncio.Semaphore(parallelism)
    tasks = [
        asyncio.create_task(_add_file(store, name, file_path, semaphore))
        for name, file_path in data_sources
    ]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    # keep the per-file tags around so the data does not get collected
    file_tags = [r[1] for r in results if not isinstance(r, BaseException)]
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        for tag in file_tags:
            tag.release()
        raise errors[0]

    try:
        names_and_hashes: List[Tuple[str, Hash]] = [(name, tag.hash) for name, tag in results]
        collection = Collection(names_and_hashes)
        collection_tag = collection.store(store)
    finally:
        # collection is stored (or the import failed); the entries are
        # protected by the collection tag from here on
        for tag in file_tags:
            tag.release()

    logger.info(f"Imported {len(collection)} files as {collection_tag.hash.hex[:16]}...")
    return ImportResult(collection=collection, tags=[collection_tag])
