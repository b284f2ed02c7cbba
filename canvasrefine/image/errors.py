"""Exception type raised inside image adapters.

Adapters raise `GenerationError` with an `ErrorKind`; the dispatcher in
`canvasrefine.image.service` is the only place that converts it into a
`GenerationResult`. Nothing raised here escapes `ImageGenerationService.generate`.
"""

from canvasrefine.core.models import ErrorKind


class GenerationError(RuntimeError):
    """Adapter failure carrying a dispatcher error kind."""

    def __init__(self, kind: ErrorKind, detail: str):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"
