"""Refinement orchestration: generate, refine, reroll.

Architectural role:
    Sits between the API/CLI adapters and the pipeline components. Owns no
    state of its own; all state lives in the version chain repository and the
    artifact store.

Processing flow (refine):
    1. Load the parent entry; it must hold a successful image.
    2. Normalize and describe every annotation against the canvas size.
    3. Obtain a reference description (caller-supplied, or from a vision
       model when enabled).
    4. Compose the bounded refinement instruction.
    5. Start a `refinement` entry, dispatch, and complete the entry.

Processing flow (reroll):
    Start a `reroll` entry from the parent's stored instruction and dispatch
    it again. No annotation processing, no vision call.

Error handling strategy:
    - Dispatch failures arrive as failed `GenerationResult` values and mark
      the entry failed.
    - A composer budget failure is reported as `PromptTooLong` without
      creating an entry.
    - A vision-description failure is logged and the refinement continues
      without a description.
    - Unknown entry ids raise `EntryNotFound`; invalid chain operations raise
      `ChainError`. Adapters map both to client errors.
"""

import logging
from dataclasses import dataclass

from canvasrefine.core.models import (
    Annotation,
    ChainEntry,
    EntryStatus,
    ErrorKind,
    GenerationRequest,
    GenerationResult,
    ImageSize,
    ProviderOptions,
    RefinementRequest,
)
from canvasrefine.image.errors import GenerationError
from canvasrefine.image.service import ImageGenerationService
from canvasrefine.llm.provider_config import (
    ARTIFACT_DIR,
    CHAIN_STORE_PATH,
    DESCRIBE_REFERENCE_IMAGE,
    IMAGE_SIZE,
    default_options,
)
from canvasrefine.llm.service import describe_image
from canvasrefine.memory.artifact_store import ArtifactStore
from canvasrefine.memory.repository import InMemoryChainRepository, JsonChainRepository
from canvasrefine.memory.version_chain import ChainError, VersionChainManager
from canvasrefine.prompting.prompt_builder import (
    PromptBudgetError,
    compose_refinement,
    region_feedback_lines,
)
from canvasrefine.spatial.describer import finalize_annotation


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefinementOutcome:
    """What the session store receives after one pipeline run."""

    result: GenerationResult
    entry: ChainEntry | None
    chain: tuple[str, ...]


class RefinementEngine:
    """Run the generate / refine / reroll pipelines."""

    def __init__(
        self,
        service: ImageGenerationService,
        chains: VersionChainManager,
        store: ArtifactStore,
        options: ProviderOptions | None = None,
        describe_reference: bool = DESCRIBE_REFERENCE_IMAGE,
        describer=describe_image,
    ) -> None:
        self.service = service
        self.chains = chains
        self.store = store
        self.options = options or default_options()
        self.describe_reference = describe_reference
        self.describer = describer

    # ============================================================
    # Shared dispatch step
    # ============================================================

    async def _dispatch(
        self,
        entry: ChainEntry,
        options: ProviderOptions,
        previous_image: str | None = None,
    ) -> RefinementOutcome:
        request = GenerationRequest(
            prompt=entry.composed_prompt,
            size=entry.size,
            session_id=entry.session_id,
            options=options,
            previous_image=previous_image,
        )
        result = await self.service.generate(request)
        completed = await self.chains.complete(entry, result)

        if result.success and completed.status == EntryStatus.ABANDONED:
            await self.store.delete(result.artifact_ref)

        return RefinementOutcome(result=result, entry=completed, chain=completed.chain)

    # ============================================================
    # Operations
    # ============================================================

    async def generate(
        self,
        prompt: str,
        session_id: str,
        size: str | None = None,
        options: ProviderOptions | None = None,
    ) -> RefinementOutcome:
        """Generate the first image of a new thread."""
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValueError("Prompt must not be empty")
        size = str(ImageSize.parse(size or IMAGE_SIZE))

        entry = await self.chains.start_generation(session_id, prompt, size)
        return await self._dispatch(entry, options or self.options)

    async def refine(
        self,
        entry_id: str,
        annotations: list[Annotation],
        global_feedback: str = "",
        canvas_width: float | None = None,
        canvas_height: float | None = None,
        reference_description: str | None = None,
        options: ProviderOptions | None = None,
    ) -> RefinementOutcome:
        """Refine a generated image from annotations and feedback.

        Args:
            entry_id: Entry whose image is being refined.
            annotations: Marks in canvas pixel coordinates.
            global_feedback: Free text applying to the whole image.
            canvas_width: Width of the displayed image the marks were drawn on
                (defaults to the generated width).
            canvas_height: Displayed height (defaults to the generated height).
            reference_description: Known description of the parent image;
                skips the vision call when given.
            options: Provider options override for this call.

        Returns:
            `RefinementOutcome`; `entry` is `None` only when the composed
            instruction could not fit the prompt budget.
        """
        parent = await self.chains.get(entry_id)
        if not parent.artifact_ref:
            raise ChainError(f"Entry {parent.id} has no image to refine ({parent.status.value})")

        options = options or self.options
        size = ImageSize.parse(parent.size)
        width = canvas_width or size.width
        height = canvas_height or size.height

        regions = tuple(finalize_annotation(a, width, height, size) for a in annotations)

        if reference_description is None and self.describe_reference:
            reference_description = await self._describe(parent, options)

        composition_request = RefinementRequest(
            original_prompt=parent.original_prompt,
            size=parent.size,
            options=options,
            reference_description=reference_description,
            global_feedback=global_feedback,
            regions=regions,
        )
        try:
            composed = compose_refinement(composition_request)
        except PromptBudgetError as exc:
            logger.warning("Refinement of %s rejected: %s", parent.id, exc)
            return RefinementOutcome(
                result=GenerationResult.failed(ErrorKind.PROMPT_TOO_LONG, str(exc)),
                entry=None,
                chain=parent.chain,
            )

        if composed.description_truncated or composed.feedback_truncated or composed.description_dropped:
            logger.info("Refinement prompt truncated to %d chars", len(composed.text))

        entry = await self.chains.start_refinement(
            parent,
            composed.text,
            reference_description=reference_description,
            global_feedback=global_feedback or "",
            region_feedback=tuple(region_feedback_lines(regions)),
        )
        return await self._dispatch(entry, self._refinement_options(options), parent.artifact_ref)

    async def reroll(self, entry_id: str, options: ProviderOptions | None = None) -> RefinementOutcome:
        """Regenerate from an entry's stored instruction as a new version."""
        entry = await self.chains.start_reroll(entry_id)
        options = options or self.options
        if entry.is_refinement:
            options = self._refinement_options(options)
        return await self._dispatch(entry, options, entry.source_ref)

    async def abandon(self, entry_id: str) -> ChainEntry:
        return await self.chains.abandon(entry_id)

    async def thread(self, thread_id: str) -> list[ChainEntry]:
        return await self.chains.thread(thread_id)

    async def list_artifacts(self, session_id: str) -> list[str]:
        return await self.store.list(session_id)

    async def delete_artifact(self, ref: str) -> bool:
        return await self.store.delete(ref)

    # ============================================================
    # Helpers
    # ============================================================

    @staticmethod
    def _refinement_options(options: ProviderOptions) -> ProviderOptions:
        # The chat-mediated backend always sees the image being refined.
        if options.model == "gpt-4o" and not options.upload_previous_image:
            return options.with_overrides(upload_previous_image=True)
        return options

    async def _describe(self, parent: ChainEntry, options: ProviderOptions) -> str | None:
        try:
            image_bytes = await self.store.read(parent.artifact_ref)
            description = await self.describer(
                image_bytes,
                parent.original_prompt,
                options.api_key,
                options.api_endpoint,
            )
        except (GenerationError, OSError, ValueError) as exc:
            logger.warning("Reference description unavailable for %s: %s", parent.id, exc)
            return None
        logger.info("Reference description obtained (%d chars)", len(description))
        return description


def build_engine() -> RefinementEngine:
    """Construct an engine from environment configuration.

    Chains persist to `CHAIN_STORE_PATH` when it is set, otherwise they live
    in process memory.
    """
    store = ArtifactStore(ARTIFACT_DIR)
    repository = JsonChainRepository(CHAIN_STORE_PATH) if CHAIN_STORE_PATH else InMemoryChainRepository()
    return RefinementEngine(
        service=ImageGenerationService(store),
        chains=VersionChainManager(repository),
        store=store,
    )
