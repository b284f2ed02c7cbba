"""
HTTP API adapter for the canvasrefine engine.

Architectural role:
- Expose generation, refinement and reroll over JSON.
- Validate request bodies with pydantic schemas.
- Delegate all pipeline work to `canvasrefine.core.engine.RefinementEngine`.
- Serialize `RefinementOutcome` values into response envelopes.

Endpoint responsibilities:
- `POST /v1/images/generations`: start a new thread from a prompt.
- `POST /v1/images/{entry_id}/refinements`: refine an entry's image from
  annotations and feedback.
- `POST /v1/images/{entry_id}/rerolls`: regenerate an entry's instruction.
- `POST /v1/images/{entry_id}/abandon`: stop waiting for a generation.
- `GET /v1/threads/{thread_id}`: list a thread's entries.
- `GET /v1/sessions/{session_id}/artifacts`: list stored artifacts.
- `DELETE /v1/artifacts?ref=...`: delete one artifact (idempotent).

Error handling strategy:
- Generation failures are not HTTP errors: they return 200 with
  `success: false` and an `error_kind`, since the entry is still recorded.
- Unknown entry ids -> HTTP 404.
- Invalid chain operations, malformed sizes, empty prompts, refs outside the
  artifact directory -> HTTP 400.
- Schema violations -> FastAPI's default HTTP 422.

Side effects:
- Loads environment variables at import time via `load_dotenv()`.
- Builds one process-wide engine lazily on first use; tests override the
  `get_engine` dependency instead.
"""

from dotenv import load_dotenv

load_dotenv()

import logging
import os
from functools import lru_cache
from typing import Any, Literal

from fastapi import Depends, FastAPI, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from canvasrefine.core.engine import RefinementEngine, RefinementOutcome, build_engine
from canvasrefine.core.models import Annotation, ChainEntry, ProviderOptions, ShapeKind
from canvasrefine.image.errors import GenerationError
from canvasrefine.memory.version_chain import ChainError, EntryNotFound


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="canvasrefine")


# ============================================================
# Engine wiring
# ============================================================

@lru_cache(maxsize=1)
def get_engine() -> RefinementEngine:
    return build_engine()


# ============================================================
# Request Schema
# ============================================================

class OptionsOverride(BaseModel):
    """Per-request provider overrides; unset fields keep configured values."""

    model: str | None = None
    sd_provider: str | None = None
    api_endpoint: str | None = None
    sd_host: str | None = None
    style: str | None = None
    quality: str | None = None
    negative_prompt: str | None = None
    num_images: int | None = Field(default=None, ge=1, le=4)
    upload_previous_image: bool | None = None


class GenerationBody(BaseModel):
    prompt: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    size: str | None = None
    options: OptionsOverride | None = None


class AnnotationBody(BaseModel):
    id: str
    shape_kind: Literal["rectangle", "freehand", "shape"] = "rectangle"
    points: list[float]
    feedback: str = ""


class RefinementBody(BaseModel):
    annotations: list[AnnotationBody] = Field(default_factory=list)
    global_feedback: str = ""
    canvas_width: float | None = Field(default=None, gt=0)
    canvas_height: float | None = Field(default=None, gt=0)
    reference_description: str | None = None
    options: OptionsOverride | None = None


class RerollBody(BaseModel):
    options: OptionsOverride | None = None


# ============================================================
# Response formatting
# ============================================================

def _options(engine: RefinementEngine, override: OptionsOverride | None) -> ProviderOptions:
    if override is None:
        return engine.options
    return engine.options.with_overrides(**override.model_dump())


def _entry_payload(entry: ChainEntry | None) -> dict[str, Any] | None:
    if entry is None:
        return None
    return entry.to_dict()


def _outcome_payload(outcome: RefinementOutcome) -> dict[str, Any]:
    result = outcome.result
    return {
        "success": result.success,
        "artifact_ref": result.artifact_ref,
        "composed_prompt_used": result.composed_prompt_used,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "message": result.message,
        "enrichment": result.enrichment,
        "entry": _entry_payload(outcome.entry),
        "chain": list(outcome.chain),
    }


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ============================================================
# Endpoints
# ============================================================

@app.post("/v1/images/generations")
async def create_generation(body: GenerationBody, engine: RefinementEngine = Depends(get_engine)):
    """Generate the first image of a new thread."""
    try:
        outcome = await engine.generate(
            body.prompt,
            body.session_id,
            size=body.size,
            options=_options(engine, body.options),
        )
    except ValueError as exc:
        return _error(400, str(exc))
    return _outcome_payload(outcome)


@app.post("/v1/images/{entry_id}/refinements")
async def create_refinement(
    entry_id: str,
    body: RefinementBody,
    engine: RefinementEngine = Depends(get_engine),
):
    """
    Refine an entry's image.

    Annotation points are canvas pixels: rectangles as two corners
    `[x1, y1, x2, y2]`, freehand strokes and shapes as `[x, y, x, y, ...]`.
    """
    annotations = [
        Annotation(
            id=a.id,
            shape_kind=ShapeKind(a.shape_kind),
            raw_points=list(a.points),
            feedback_text=a.feedback,
        )
        for a in body.annotations
    ]
    try:
        outcome = await engine.refine(
            entry_id,
            annotations,
            global_feedback=body.global_feedback,
            canvas_width=body.canvas_width,
            canvas_height=body.canvas_height,
            reference_description=body.reference_description,
            options=_options(engine, body.options),
        )
    except EntryNotFound:
        return _error(404, f"Unknown entry: {entry_id}")
    except (ChainError, ValueError) as exc:
        return _error(400, str(exc))
    return _outcome_payload(outcome)


@app.post("/v1/images/{entry_id}/rerolls")
async def create_reroll(
    entry_id: str,
    body: RerollBody | None = None,
    engine: RefinementEngine = Depends(get_engine),
):
    """Regenerate an entry's stored instruction as a new version."""
    override = body.options if body else None
    try:
        outcome = await engine.reroll(entry_id, options=_options(engine, override))
    except EntryNotFound:
        return _error(404, f"Unknown entry: {entry_id}")
    except ChainError as exc:
        return _error(400, str(exc))
    return _outcome_payload(outcome)


@app.post("/v1/images/{entry_id}/abandon")
async def abandon_entry(entry_id: str, engine: RefinementEngine = Depends(get_engine)):
    try:
        entry = await engine.abandon(entry_id)
    except EntryNotFound:
        return _error(404, f"Unknown entry: {entry_id}")
    return _entry_payload(entry)


@app.get("/v1/threads/{thread_id}")
async def get_thread(thread_id: str, engine: RefinementEngine = Depends(get_engine)):
    entries = await engine.thread(thread_id)
    if not entries:
        return _error(404, f"Unknown thread: {thread_id}")
    return {"thread_id": thread_id, "entries": [e.to_dict() for e in entries]}


@app.get("/v1/sessions/{session_id}/artifacts")
async def list_artifacts(session_id: str, engine: RefinementEngine = Depends(get_engine)):
    try:
        refs = await engine.list_artifacts(session_id)
    except GenerationError as exc:
        return _error(400, exc.detail)
    return {"session_id": session_id, "artifacts": refs}


@app.delete("/v1/artifacts")
async def delete_artifact(ref: str = Query(min_length=1), engine: RefinementEngine = Depends(get_engine)):
    try:
        deleted = await engine.delete_artifact(ref)
    except ValueError as exc:
        return _error(400, str(exc))
    return {"ref": ref, "deleted": deleted}
