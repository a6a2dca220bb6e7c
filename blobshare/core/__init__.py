"""
Core: content addressing, manifest names and collections.
"""

from .content_addressing import BlobFormat, ContentAddressingEngine, Hash, HashAndFormat
from .collection import Collection, ManifestEntry
from .exporter import export_blob, export_collection
from .importer import ImportResult, import_path
from .paths import decode_path, encode_path

__all__ = [
    "BlobFormat",
    "ContentAddressingEngine",
    "Hash",
    "HashAndFormat",
    "Collection",
    "ManifestEntry",
    "export_blob",
    "export_collection",
    "ImportResult",
    "import_path",
    "decode_path",
    "encode_path",
]
