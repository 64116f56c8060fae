"""
Cloud sync for persisted state.

Modules:
- conflict: Conflict strategies and ConflictResolver
- models: SyncStrategy, MergeOptions, SyncResult
- sync: SyncOrchestrator (timer, local changes, remote push)
- firebase_storage: Firebase Realtime Database adapter with change stream
- supabase_storage: Supabase table adapter
"""

__all__ = [
    "conflict",
    "firebase_storage",
    "models",
    "supabase_storage",
    "sync",
]
