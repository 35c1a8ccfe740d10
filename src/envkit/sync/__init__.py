"""
Encrypted variable sync -- the local env file against a remote store.

Values are sealed client-side with AES-GCM under a per-team key before
they travel. The engine compares three fingerprints (local, remote, last
synced) to decide whether to push, pull, or ask.
"""

from .engine import SyncEngine, decide
from .envelope import EnvelopeCipher
from .remote import RemoteStore, SqliteRemoteStore

__all__ = ["EnvelopeCipher", "RemoteStore", "SqliteRemoteStore", "SyncEngine", "decide"]
