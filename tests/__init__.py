"""
attendance-sync test suite.

This package contains:
- unit/: Unit tests (no network; SQLite only in temporary directories)
- integration/: Multi-peer tests over the in-memory relay and a local aiohttp relay
"""
