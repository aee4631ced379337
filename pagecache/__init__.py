"""Memory-aware sharded LRU cache for HTTP page data, with refresh, dumps and a small HTTP server."""

__version__ = "0.1.0"