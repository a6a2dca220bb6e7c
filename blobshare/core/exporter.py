"""
Export a collection from a blob store into a directory tree.
"""

import os
from pathlib import Path
from typing import Iterable, List, Tuple, Union
import logging

from .collection import ManifestEntry
from .content_addressing import Hash
from .errors import InvalidPathError, TargetExistsError
from .paths import decode_path

logger = logging.getLogger(__name__)


def _check_parents(root: Path, targets: List[Tuple[Path, Hash]]) -> None:
    """Make sure every target's parent directories can be created."""
    files = {target for target, _ in targets}
    for target, _ in targets:
        parent = target.parent
        while parent != root:
            if parent in files:
                raise InvalidPathError(f"entry {target} lies below the file {parent}")
            if os.path.islink(parent) or (parent.exists() and not parent.is_dir()):
                logger.error(f"target {parent} already exists. Export stopped.")
                raise TargetExistsError(parent)
            parent = parent.parent


async def export_collection(
    store,
    collection: Iterable[ManifestEntry],
    root: Union[str, Path],
) -> List[Path]:
    """
    Materialize every entry of ``collection`` below ``root``.

    Entries are written sequentially in collection order. All names are
    decoded before anything is written, so a single invalid name leaves the
    destination untouched. If a target already exists (file, directory or
    dangling link) the export stops with ``TargetExistsError`` and the
    existing path is left as it is; already downloaded blobs stay in the
    store, so a retry does not fetch them again.

    Args:
        store: LocalBlobStore holding every entry's blob
        collection: Collection (or any iterable of ManifestEntry)
        root: Destination directory

    Returns:
        Paths written, in collection order

    Raises:
        InvalidPathError: If an entry name would escape ``root`` or an entry
            lies below another entry's file
        TargetExistsError: If a target path already exists, or one of its
            parents exists and is not a directory
    """
    root = Path(root)
    targets: List[Tuple[Path, Hash]] = [
        (decode_path(entry.name, root), entry.hash) for entry in collection
    ]
    _check_parents(root, targets)

    written = []
    for target, blob_hash in targets:
        if os.path.lexists(target):
            logger.error(f"target {target} already exists. Export stopped.")
            raise TargetExistsError(target)
        await store.export(blob_hash, target)
        written.append(target)

    logger.info(f"Exported {len(written)} files to {root}")
    return written


async def export_blob(store, blob_hash: Hash, target: Union[str, Path]) -> Path:
    """
    Materialize a single blob at ``target``.

    Raises:
        TargetExistsError: If ``target`` already exists
    """
    target = Path(target)
    if os.path.lexists(target):
        raise TargetExistsError(target)
    await store.export(blob_hash, target)
    return target
