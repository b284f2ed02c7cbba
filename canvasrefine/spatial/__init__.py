"""Spatial processing for canvas annotations.

Scope:
    Converts raw drawing coordinates into image-relative regions and renders
    those regions as human-readable position phrases for prompt composition.

Composition:
    - `normalizer`: raw points -> `NormalizedRegion` (clamped to [0, 1]).
    - `describer`: `NormalizedRegion` -> 3x3 grid phrase, cached per annotation.

Side effects:
    None beyond updating derived fields on the `Annotation` objects passed in.
"""
