"""
blobshare P2P layer

Components:
- Transport: authenticated, framed TCP connections
- Network: blob request/response protocol and downloader
- Discovery: provider candidates, tracker queries and announcements
- Events: provider-side transfer events
"""
