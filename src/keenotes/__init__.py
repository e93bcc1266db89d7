"""KeeNotes client: end-to-end encrypted note capture with server sync."""

__version__ = "0.1.0"
