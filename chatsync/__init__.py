"""chatsync - offline-first message synchronization core."""

__version__ = "0.1.0"
