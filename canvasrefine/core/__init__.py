"""Core orchestration package.

Architectural role:
    Exposes the pipeline layer that sits between API/CLI entrypoints and the
    spatial, prompting, image and persistence subsystems.

Composition:
    - `models`: value types shared by every layer.
    - `engine`: generate / refine / reroll control flow.

Determinism and side effects:
    Package import is side-effect free. Runtime side effects are performed by
    `engine` through the artifact store and chain repository.
"""
