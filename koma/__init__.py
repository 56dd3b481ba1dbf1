"""
Project persistence engine for Koma, a stop-motion capture tool.

Modules:
- models: Project tree (Project, Koma, Shot, Blob, ...)
- serializer: Flatten/unflatten between projects and project.json manifests
- document: Document store and mutation API
- history: Snapshot-based undo/redo
- coordinator: Single-flight open, coalesced save, auto-save
- storage: Storage roots and the blob store
- config: Engine settings (~/.koma/settings.json)
- constants: File naming and default template values
- errors: Error types
"""
