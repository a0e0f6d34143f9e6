"""
Synchronization core: fingerprint, envelopes, local store adapter, sessions and engine
"""

from .engine import SyncEngine
from .envelope import EnvelopeStateError, SyncEnvelope
from .fingerprint import content_fingerprint, fingerprint_of
from .local_store import LocalStoreAdapter, Resolution
from .runner import SyncRunner, kinds_for
from .session import SyncContext, SyncReport, SyncSessionError

__all__ = [
    "EnvelopeStateError",
    "LocalStoreAdapter",
    "Resolution",
    "SyncContext",
    "SyncEngine",
    "SyncEnvelope",
    "SyncReport",
    "SyncRunner",
    "SyncSessionError",
    "content_fingerprint",
    "fingerprint_of",
    "kinds_for",
]
