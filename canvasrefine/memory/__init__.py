"""Persistence package.

Architectural role:
    Groups the stateful components of the pipeline:
    - `file_service`: filesystem primitives behind a protocol.
    - `artifact_store`: session-namespaced copies of generated images.
    - `repository`: chain-entry persistence (in-memory or JSON file).
    - `version_chain`: lineage rules for generations, refinements and rerolls.

Nothing outside this package writes to disk.
"""
