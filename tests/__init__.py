"""
DocStore SDK Test Suite.

This package contains:
- unit/: Unit tests (no network, no store)
- integration/: Engine tests against the in-memory store
"""
