"""
Storage layer for Koma projects.

Modules:
- base: Storage backend contract (roots, file handles, writers, permissions)
- local: Directory on the local filesystem
- memory: In-memory root (scratch sessions, tests)
- packed: Single-file MessagePack bundle (.koma)
- blob_store: Memoized binary asset reads/writes
"""
