"""Core modules for KeeNotes.

Encryption, sync and local storage. No UI dependencies.
"""
