"""Append-only version chains for generated images.

Entry lifecycle:
    generating -> succeeded | failed
    generating -> abandoned (caller stopped waiting; a late result is dropped)

Threads:
    A thread starts with a `generation` entry whose id becomes the thread id.
    `refinement` and `reroll` entries join their parent's thread. Entries are
    never rewritten except for the single status transition out of
    `generating`.

History rules:
    - A child's `history` is the parent's `history` plus the parent's
      artifact when the parent has one.
    - A reroll copies the parent's composed instruction, reference
      description and feedback verbatim, so it costs no new vision call.
    - Two successful entries never share an artifact reference.

Persistence:
    All reads and writes go through the injected `ChainRepository`.
"""

import logging
import time
import uuid
from dataclasses import replace
from typing import Callable

from canvasrefine.core.models import (
    ChainEntry,
    EntryKind,
    EntryStatus,
    GenerationResult,
)
from canvasrefine.memory.repository import ChainRepository


logger = logging.getLogger(__name__)


class ChainError(ValueError):
    """Invalid chain operation (bad transition, duplicate artifact)."""


class EntryNotFound(KeyError):
    """No chain entry with the requested id."""


class VersionChainManager:
    """Create and complete chain entries through a repository."""

    def __init__(
        self,
        repository: ChainRepository,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repository = repository
        self.id_factory = id_factory
        self.clock = clock

    async def get(self, entry_id: str) -> ChainEntry:
        entry = await self.repository.get(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    async def _resolve(self, entry: ChainEntry | str) -> ChainEntry:
        if isinstance(entry, ChainEntry):
            return entry
        return await self.get(entry)

    async def _append(self, entry: ChainEntry) -> ChainEntry:
        await self.repository.append(entry)
        logger.info("Chain entry %s started (%s, thread %s)", entry.id, entry.kind.value, entry.thread_id)
        return entry

    # ============================================================
    # Starting entries
    # ============================================================

    async def start_generation(self, session_id: str, prompt: str, size: str) -> ChainEntry:
        """Start a new thread from a plain prompt."""
        entry_id = self.id_factory()
        return await self._append(ChainEntry(
            id=entry_id,
            thread_id=entry_id,
            session_id=session_id,
            kind=EntryKind.GENERATION,
            status=EntryStatus.GENERATING,
            original_prompt=prompt,
            size=size,
            composed_prompt=prompt,
            created_at=self.clock(),
        ))

    async def start_refinement(
        self,
        parent: ChainEntry | str,
        composed_prompt: str,
        reference_description: str | None = None,
        global_feedback: str = "",
        region_feedback: tuple[str, ...] = (),
        size: str | None = None,
    ) -> ChainEntry:
        """Start a refinement of a successful entry.

        Raises:
            ChainError: When the parent has no image to refine.
        """
        parent = await self._resolve(parent)
        if parent.status != EntryStatus.SUCCEEDED or not parent.artifact_ref:
            raise ChainError(f"Entry {parent.id} has no image to refine ({parent.status.value})")

        return await self._append(ChainEntry(
            id=self.id_factory(),
            thread_id=parent.thread_id,
            session_id=parent.session_id,
            kind=EntryKind.REFINEMENT,
            status=EntryStatus.GENERATING,
            original_prompt=parent.original_prompt,
            size=size or parent.size,
            composed_prompt=composed_prompt,
            parent_id=parent.id,
            is_refinement=True,
            reference_description=reference_description,
            global_feedback=global_feedback,
            region_feedback=tuple(region_feedback),
            history=parent.chain,
            source_ref=parent.artifact_ref,
            created_at=self.clock(),
        ))

    async def start_reroll(self, parent: ChainEntry | str) -> ChainEntry:
        """Start a reroll reusing the parent's stored inputs.

        Raises:
            ChainError: When the parent is still generating.
        """
        parent = await self._resolve(parent)
        if parent.status == EntryStatus.GENERATING:
            raise ChainError(f"Entry {parent.id} is still generating")

        return await self._append(ChainEntry(
            id=self.id_factory(),
            thread_id=parent.thread_id,
            session_id=parent.session_id,
            kind=EntryKind.REROLL,
            status=EntryStatus.GENERATING,
            original_prompt=parent.original_prompt,
            size=parent.size,
            composed_prompt=parent.composed_prompt,
            parent_id=parent.id,
            is_refinement=parent.is_refinement,
            reference_description=parent.reference_description,
            global_feedback=parent.global_feedback,
            region_feedback=parent.region_feedback,
            history=parent.chain,
            source_ref=parent.source_ref,
            created_at=self.clock(),
        ))

    # ============================================================
    # Completing entries
    # ============================================================

    async def complete(self, entry: ChainEntry | str, result: GenerationResult) -> ChainEntry:
        """Record the dispatch result on a generating entry.

        Returns:
            The updated entry. An abandoned entry is returned unchanged and
            the result is dropped.

        Raises:
            ChainError: Entry already completed, or the artifact reference is
                already held by another successful entry.
        """
        entry = await self.get(entry.id if isinstance(entry, ChainEntry) else entry)

        if entry.status == EntryStatus.ABANDONED:
            logger.info("Result for abandoned entry %s dropped", entry.id)
            return entry
        if entry.status != EntryStatus.GENERATING:
            raise ChainError(f"Entry {entry.id} is already {entry.status.value}")

        if result.success:
            for other in await self.repository.list_session(entry.session_id):
                if (
                    other.id != entry.id
                    and other.status == EntryStatus.SUCCEEDED
                    and other.artifact_ref == result.artifact_ref
                ):
                    raise ChainError(f"Artifact already recorded by entry {other.id}")
            updated = replace(entry, status=EntryStatus.SUCCEEDED, artifact_ref=result.artifact_ref)
        else:
            updated = replace(
                entry,
                status=EntryStatus.FAILED,
                error_kind=result.error_kind,
                error_message=result.message,
            )

        await self.repository.update(updated)
        logger.info("Chain entry %s %s", updated.id, updated.status.value)
        return updated

    async def abandon(self, entry: ChainEntry | str) -> ChainEntry:
        """Mark a generating entry abandoned. Terminal entries are returned as-is."""
        entry = await self.get(entry.id if isinstance(entry, ChainEntry) else entry)
        if entry.status != EntryStatus.GENERATING:
            return entry
        updated = replace(entry, status=EntryStatus.ABANDONED)
        await self.repository.update(updated)
        logger.info("Chain entry %s abandoned", entry.id)
        return updated

    # ============================================================
    # Queries
    # ============================================================

    async def thread(self, thread_id: str) -> list[ChainEntry]:
        entries = await self.repository.list_thread(thread_id)
        return sorted(entries, key=lambda e: e.created_at)

    async def chain(self, entry_id: str) -> tuple[str, ...]:
        return (await self.get(entry_id)).chain

    async def preview(self, entry_id: str, index: int) -> str | None:
        """Return one version of an entry's chain, `None` when out of range."""
        chain = await self.chain(entry_id)
        try:
            return chain[index]
        except IndexError:
            return None
