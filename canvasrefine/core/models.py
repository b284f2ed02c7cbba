"""Shared value types for the refinement pipeline.

Architectural role:
    Every layer (spatial, prompting, image adapters, artifact storage, version
    chain, API adapters) exchanges the dataclasses defined here. Nothing in this
    module performs I/O.

Mutability:
    - `Annotation` is mutable while a drawing gesture is in progress; derived
      fields (`normalized_region`, `spatial_phrase`) are refreshed by
      `canvasrefine.spatial`.
    - Everything that crosses an `await` boundary (requests, results, chain
      entries) is frozen.

Size tokens:
    Sizes travel as `"<width>x<height>"` strings (for example `"1024x1024"`) and
    are parsed with `ImageSize.parse`.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


# ============================================================
# Geometry
# ============================================================

class ShapeKind(str, Enum):
    """Drawing tool that produced an annotation."""

    RECTANGLE = "rectangle"
    FREEHAND = "freehand"
    SHAPE = "shape"


@dataclass(frozen=True)
class NormalizedRegion:
    """Axis-aligned bounding box in image-relative units.

    All bounds lie in [0, 1] with `x1 <= x2` and `y1 <= y2`. Zero width or
    height is allowed (a click without drag).
    """

    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def center(self) -> tuple[float, float]:
        return (self.x1 + self.x2) / 2, (self.y1 + self.y2) / 2


@dataclass
class Annotation:
    """One user-drawn mark with attached feedback.

    Fields:
        id: Canvas-assigned identifier.
        shape_kind: Drawing tool used.
        raw_points: Canvas pixel coordinates. Rectangles carry two corner
            points `[x1, y1, x2, y2]`; freehand and shape strokes carry a
            flattened point list `[x, y, x, y, ...]`.
        feedback_text: Free text, may be empty.
        normalized_region: Derived by the normalizer.
        spatial_phrase: Derived by the describer and cached until the region
            changes.
    """

    id: str
    shape_kind: ShapeKind
    raw_points: list[float]
    feedback_text: str = ""
    normalized_region: NormalizedRegion | None = None
    spatial_phrase: str | None = None
    # Region and size the cached phrase was built from.
    phrase_source: tuple[NormalizedRegion, str | None] | None = field(
        default=None, repr=False, compare=False
    )

    @classmethod
    def from_canvas_rect(
        cls,
        id: str,
        x: float,
        y: float,
        width: float,
        height: float,
        feedback_text: str = "",
    ) -> "Annotation":
        """Build a rectangle annotation from origin + size canvas output.

        Drawing surfaces often report rectangles as the drag origin plus a
        signed width/height. Negative extents (dragging up or left) are kept as
        signed corners; the normalizer orders them.
        """
        return cls(
            id=id,
            shape_kind=ShapeKind.RECTANGLE,
            raw_points=[x, y, x + width, y + height],
            feedback_text=feedback_text,
        )

    def move_to(self, raw_points: list[float]) -> None:
        """Replace the raw points while a gesture continues.

        Derived fields are cleared; the annotation must be finalized again
        before it can be composed.
        """
        self.raw_points = list(raw_points)
        self.normalized_region = None
        self.spatial_phrase = None
        self.phrase_source = None


_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")


@dataclass(frozen=True)
class ImageSize:
    """Parsed `"<width>x<height>"` size token."""

    width: int
    height: int

    @classmethod
    def parse(cls, token: str) -> "ImageSize":
        """Parse a size token.

        Raises:
            ValueError: For malformed tokens or zero dimensions.
        """
        match = _SIZE_PATTERN.match(str(token or ""))
        if not match:
            raise ValueError(f"Invalid size token: {token!r}")
        width, height = int(match.group(1)), int(match.group(2))
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid size token: {token!r}")
        return cls(width, height)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


# ============================================================
# Requests and results
# ============================================================

@dataclass(frozen=True)
class ProviderOptions:
    """Backend selection and per-backend knobs.

    `model` picks the adapter family (`dall-e-3`, `dall-e-2`, `gpt-4o`,
    `stable-diffusion`); `sd_provider` picks the Stable Diffusion backend.
    """

    model: str = "dall-e-3"
    sd_provider: str = "local"
    api_key: str | None = None
    api_endpoint: str | None = None
    sd_host: str | None = None
    sd_api_key: str | None = None
    style: str | None = None
    quality: str | None = None
    negative_prompt: str = ""
    num_images: int = 1
    upload_previous_image: bool = False
    prompt_limit: int = 4000

    def with_overrides(self, **overrides: Any) -> "ProviderOptions":
        """Return a copy with non-`None` overrides applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


@dataclass(frozen=True)
class RefinementRequest:
    """Inputs of one refinement before composition."""

    original_prompt: str
    size: str
    options: ProviderOptions
    reference_description: str | None = None
    global_feedback: str = ""
    regions: tuple[Annotation, ...] = ()


@dataclass(frozen=True)
class GenerationRequest:
    """Final dispatch input: the text actually sent to a backend."""

    prompt: str
    size: str
    session_id: str
    options: ProviderOptions
    previous_image: str | None = None


class ErrorKind(str, Enum):
    """Failure categories reported by the dispatcher."""

    AUTH_REQUIRED = "AuthRequired"
    BAD_RESPONSE = "BadResponse"
    MISSING_RESULT = "MissingResult"
    TIMEOUT = "Timeout"
    NETWORK = "Network"
    UNSUPPORTED = "Unsupported"
    STORAGE_FAILURE = "StorageFailure"
    UNRECOGNIZED_RESPONSE = "UnrecognizedResponse"
    PROVIDER_REJECTED = "ProviderRejected"
    PROMPT_TOO_LONG = "PromptTooLong"


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one dispatch. Success and error fields never coexist."""

    success: bool
    artifact_ref: str | None = None
    composed_prompt_used: str | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    enrichment: str | None = None

    @classmethod
    def succeeded(
        cls,
        artifact_ref: str,
        composed_prompt_used: str,
        enrichment: str | None = None,
    ) -> "GenerationResult":
        return cls(
            success=True,
            artifact_ref=artifact_ref,
            composed_prompt_used=composed_prompt_used,
            enrichment=enrichment,
        )

    @classmethod
    def failed(
        cls,
        error_kind: ErrorKind,
        message: str,
        enrichment: str | None = None,
    ) -> "GenerationResult":
        return cls(
            success=False,
            error_kind=error_kind,
            message=message,
            enrichment=enrichment,
        )


# ============================================================
# Version chain
# ============================================================

class EntryStatus(str, Enum):
    GENERATING = "generating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


class EntryKind(str, Enum):
    GENERATION = "generation"
    REFINEMENT = "refinement"
    REROLL = "reroll"


@dataclass(frozen=True)
class ChainEntry:
    """One generation inside a thread.

    `history` lists the artifact refs of earlier versions in this thread,
    oldest first. `composed_prompt` is the exact text dispatched and is reused
    verbatim by rerolls.
    """

    id: str
    thread_id: str
    session_id: str
    kind: EntryKind
    status: EntryStatus
    original_prompt: str
    size: str
    composed_prompt: str
    parent_id: str | None = None
    is_refinement: bool = False
    reference_description: str | None = None
    global_feedback: str = ""
    region_feedback: tuple[str, ...] = ()
    # Artifact the composed instruction was written against.
    source_ref: str | None = None
    history: tuple[str, ...] = ()
    artifact_ref: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def chain(self) -> tuple[str, ...]:
        """Full version chain ending at this entry's own artifact."""
        if self.artifact_ref:
            return self.history + (self.artifact_ref,)
        return self.history

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "session_id": self.session_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "original_prompt": self.original_prompt,
            "size": self.size,
            "composed_prompt": self.composed_prompt,
            "parent_id": self.parent_id,
            "is_refinement": self.is_refinement,
            "reference_description": self.reference_description,
            "global_feedback": self.global_feedback,
            "region_feedback": list(self.region_feedback),
            "source_ref": self.source_ref,
            "history": list(self.history),
            "artifact_ref": self.artifact_ref,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainEntry":
        error_kind = data.get("error_kind")
        return cls(
            id=data["id"],
            thread_id=data["thread_id"],
            session_id=data["session_id"],
            kind=EntryKind(data["kind"]),
            status=EntryStatus(data["status"]),
            original_prompt=data["original_prompt"],
            size=data["size"],
            composed_prompt=data["composed_prompt"],
            parent_id=data.get("parent_id"),
            is_refinement=bool(data.get("is_refinement", False)),
            reference_description=data.get("reference_description"),
            global_feedback=data.get("global_feedback", ""),
            region_feedback=tuple(data.get("region_feedback") or ()),
            source_ref=data.get("source_ref"),
            history=tuple(data.get("history") or ()),
            artifact_ref=data.get("artifact_ref"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            error_message=data.get("error_message"),
            created_at=float(data.get("created_at", 0.0)),
        )
