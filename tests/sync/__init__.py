"""Sync integration tests.

This package contains comprehensive tests for the sync functionality:
- Server endpoint tests
- Client operation tests
- Bi-directional sync integration tests
- Conflict detection and resolution tests
- Network failure and recovery tests
- Concurrent modification tests
"""
