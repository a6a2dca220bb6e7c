"""
blobshare - content-addressed file and directory sharing

Components:
- core: path codec, collections, importer and exporter
- backends: local content-addressed blob store
- p2p: identity, transport, blob protocol, discovery and announcing
"""

__version__ = "0.1.0"
