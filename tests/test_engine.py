import pytest

from canvasrefine.core.engine import RefinementEngine
from canvasrefine.core.models import (
    Annotation,
    EntryKind,
    EntryStatus,
    ErrorKind,
    ProviderOptions,
    ShapeKind,
)
from canvasrefine.image.errors import GenerationError
from canvasrefine.memory.repository import InMemoryChainRepository
from canvasrefine.memory.version_chain import ChainError, EntryNotFound, VersionChainManager

from conftest import FakeImageService


class FakeDescriber:
    """Records vision calls and returns a fixed description."""

    def __init__(self, description="A red barn in a wheat field.", error=None):
        self.description = description
        self.error = error
        self.calls = []

    async def __call__(self, image_bytes, original_prompt, api_key, api_endpoint=None):
        self.calls.append((image_bytes, original_prompt))
        if self.error is not None:
            raise self.error
        return self.description


@pytest.fixture
def describer():
    return FakeDescriber()


@pytest.fixture
def engine(fake_service, chains, store, options, describer):
    return RefinementEngine(fake_service, chains, store, options=options, describer=describer)


def _snowman():
    return Annotation("1", ShapeKind.RECTANGLE, [700, 720, 950, 950], "add a snowman")


@pytest.mark.asyncio
async def test_generate_starts_thread(engine, fake_service):
    outcome = await engine.generate("a red barn", "s1")

    assert outcome.result.success
    assert outcome.entry.kind == EntryKind.GENERATION
    assert outcome.entry.status == EntryStatus.SUCCEEDED
    assert outcome.chain == (outcome.result.artifact_ref,)
    request = fake_service.requests[0]
    assert request.prompt == "a red barn"
    assert request.size == "1024x1024"
    assert request.previous_image is None


@pytest.mark.asyncio
async def test_generate_rejects_empty_prompt(engine):
    with pytest.raises(ValueError):
        await engine.generate("   ", "s1")


@pytest.mark.asyncio
async def test_refine_composes_and_dispatches(engine, fake_service, describer, store):
    parent = (await engine.generate("a red barn", "s1")).entry

    outcome = await engine.refine(
        parent.id,
        [_snowman()],
        global_feedback="make it winter",
        canvas_width=1000,
        canvas_height=1000,
    )

    assert outcome.result.success
    entry = outcome.entry
    assert entry.kind == EntryKind.REFINEMENT
    assert entry.parent_id == parent.id
    assert entry.reference_description == describer.description
    assert entry.global_feedback == "make it winter"
    assert entry.region_feedback[0].startswith("1: in the bottom-right of the image")
    assert outcome.chain == (parent.artifact_ref, outcome.result.artifact_ref)

    request = fake_service.requests[-1]
    assert request.previous_image == parent.artifact_ref
    assert request.prompt == entry.composed_prompt
    assert '## ORIGINAL: "a red barn"' in request.prompt
    assert describer.description in request.prompt
    assert "- add a snowman" in request.prompt

    assert describer.calls == [(await store.read(parent.artifact_ref), "a red barn")]


@pytest.mark.asyncio
async def test_refine_defaults_canvas_to_generated_size(engine, fake_service):
    parent = (await engine.generate("a red barn", "s1", size="1024x768")).entry
    mark = Annotation("1", ShapeKind.RECTANGLE, [0, 0, 256, 192], "brighter")

    outcome = await engine.refine(parent.id, [mark])

    assert outcome.entry.region_feedback == (
        "1: in the top-left of the image (a rectangle from 0% left, 0% top to 25% right, "
        "25% bottom, with dimensions 25% wide by 25% tall, about 256x192 px) - brighter",
    )


@pytest.mark.asyncio
async def test_supplied_description_skips_vision(engine, fake_service, describer):
    parent = (await engine.generate("a red barn", "s1")).entry

    outcome = await engine.refine(parent.id, [], global_feedback="warmer", reference_description="Known.")

    assert describer.calls == []
    assert "Known." in outcome.entry.composed_prompt


@pytest.mark.asyncio
async def test_vision_failure_does_not_abort(fake_service, chains, store, options):
    describer = FakeDescriber(error=GenerationError(ErrorKind.NETWORK, "down"))
    engine = RefinementEngine(fake_service, chains, store, options=options, describer=describer)
    parent = (await engine.generate("a red barn", "s1")).entry

    outcome = await engine.refine(parent.id, [], global_feedback="warmer")

    assert outcome.result.success
    assert outcome.entry.reference_description is None
    assert "## REFERENCE IMAGE ANALYSIS" not in outcome.entry.composed_prompt


@pytest.mark.asyncio
async def test_prompt_too_long_creates_no_entry(engine, fake_service, chains):
    parent = (await engine.generate("a red barn", "s1")).entry
    tight = ProviderOptions(model="dall-e-3", api_key="sk-test", prompt_limit=300)

    outcome = await engine.refine(parent.id, [_snowman()], global_feedback="winter", options=tight)

    assert not outcome.result.success
    assert outcome.result.error_kind == ErrorKind.PROMPT_TOO_LONG
    assert outcome.entry is None
    assert outcome.chain == parent.chain
    assert len(fake_service.requests) == 1
    assert len(await chains.thread(parent.thread_id)) == 1


@pytest.mark.asyncio
async def test_dispatch_failure_marks_entry_failed(engine, fake_service):
    parent = (await engine.generate("a red barn", "s1")).entry
    fake_service.fail_with = ErrorKind.TIMEOUT

    outcome = await engine.refine(parent.id, [], global_feedback="warmer", reference_description="d")

    assert outcome.result.error_kind == ErrorKind.TIMEOUT
    assert outcome.entry.status == EntryStatus.FAILED
    assert outcome.chain == (parent.artifact_ref,)


@pytest.mark.asyncio
async def test_refining_failed_entry_rejected(engine, fake_service):
    fake_service.fail_with = ErrorKind.AUTH_REQUIRED
    failed = (await engine.generate("a red barn", "s1")).entry

    with pytest.raises(ChainError):
        await engine.refine(failed.id, [])
    with pytest.raises(EntryNotFound):
        await engine.refine("missing", [])


@pytest.mark.asyncio
async def test_reroll_reuses_instruction_without_vision(engine, fake_service, describer):
    a = (await engine.generate("a red barn", "s1")).entry
    b = (await engine.refine(a.id, [_snowman()], global_feedback="winter", canvas_width=1000, canvas_height=1000)).entry

    outcome = await engine.reroll(b.id)

    assert outcome.result.success
    c = outcome.entry
    assert c.kind == EntryKind.REROLL
    assert c.composed_prompt == b.composed_prompt
    assert c.history == (a.artifact_ref, b.artifact_ref)
    assert fake_service.requests[-1].prompt == b.composed_prompt
    assert fake_service.requests[-1].previous_image == a.artifact_ref
    assert len(describer.calls) == 1


@pytest.mark.asyncio
async def test_chat_model_refinement_uploads_previous_image(fake_service, chains, store, describer):
    options = ProviderOptions(model="gpt-4o", api_key="sk-test")
    engine = RefinementEngine(fake_service, chains, store, options=options, describer=describer)
    parent = (await engine.generate("a red barn", "s1")).entry

    await engine.refine(parent.id, [], global_feedback="warmer")

    assert fake_service.requests[0].options.upload_previous_image is False
    assert fake_service.requests[1].options.upload_previous_image is True


@pytest.mark.asyncio
async def test_late_result_for_abandoned_entry_is_discarded(store, options, describer):
    chains = VersionChainManager(InMemoryChainRepository(), id_factory=lambda: "e1")

    class AbandoningService(FakeImageService):
        async def generate(self, request):
            await chains.abandon("e1")
            return await super().generate(request)

    engine = RefinementEngine(AbandoningService(store), chains, store, options=options, describer=describer)

    outcome = await engine.generate("a red barn", "s1")

    assert outcome.entry.status == EntryStatus.ABANDONED
    assert outcome.chain == ()
    assert await store.list("s1") == []


@pytest.mark.asyncio
async def test_artifact_listing_and_deletion(engine):
    first = await engine.generate("a red barn", "s1")
    await engine.generate("a blue barn", "s2")

    refs = await engine.list_artifacts("s1")
    assert refs == [first.result.artifact_ref]
    assert await engine.delete_artifact(refs[0]) is True
    assert await engine.delete_artifact(refs[0]) is False
    assert await engine.list_artifacts("s1") == []
