"""
Arena Server Test Suite.

This package contains:
- unit/: Unit tests (storage, migrations, guard, snapshots, retention)
- integration/: Integration tests (archive restore, HTTP API)
"""
