"""Session-namespaced image artifact storage.

Purpose of this abstraction:
    Backend results are transient (signed URLs expire, inline payloads live
    only in the reply). Every result is copied into local storage and referred
    to by a stable `file://` URI from then on.

Layout:
    `<base_dir>/images/<percent-encoded session_id>/<epoch-ms>-<8 hex>.<ext>`

    The extension comes from the image format detected by Pillow. The random
    suffix keeps names unique across concurrent stores in one millisecond.

Failure handling:
    - Download failure or write failure -> `StorageFailure`
    - Payload that is not a decodable image -> `BadResponse`
    - A reference outside the artifact root -> `ValueError` (caller bug)

Dangling references:
    `display_ref` returns `MISSING_IMAGE_PLACEHOLDER` for refs whose file is
    gone; callers render that instead of failing.
"""

import io
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import quote, unquote, urlparse

from PIL import Image, UnidentifiedImageError

from canvasrefine.core.models import ErrorKind
from canvasrefine.image.client import ImageSource, ProviderHttp
from canvasrefine.image.errors import GenerationError
from canvasrefine.llm.provider_config import ARTIFACT_DIR
from canvasrefine.memory.file_service import FileService, LocalFileService


logger = logging.getLogger(__name__)


MISSING_IMAGE_PLACEHOLDER = "placeholder://missing-image"
IMAGE_PATTERNS = ("*.png", "*.jpg", "*.jpeg", "*.gif", "*.webp")

_FORMAT_EXTENSIONS = {
    "PNG": ".png",
    "JPEG": ".jpg",
    "GIF": ".gif",
    "WEBP": ".webp",
}


@dataclass(frozen=True)
class StoredArtifact:
    ref: str
    path: Path


def detect_extension(data: bytes) -> str:
    """Return the file extension for image bytes.

    Raises:
        GenerationError: `BadResponse` when Pillow cannot identify the image.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise GenerationError(ErrorKind.BAD_RESPONSE, "Backend payload is not a readable image") from exc
    return _FORMAT_EXTENSIONS.get(image_format or "", ".png")


class ArtifactStore:
    """Copy backend results into local, session-scoped storage."""

    def __init__(
        self,
        base_dir: str | Path = ARTIFACT_DIR,
        files: FileService | None = None,
        http: ProviderHttp | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_dir = Path(base_dir).resolve()
        self.files = files or LocalFileService()
        self.http = http or ProviderHttp("artifact download")
        self.clock = clock

    # ============================================================
    # Paths and references
    # ============================================================

    def session_dir(self, session_id: str) -> Path:
        # Percent-encoding keeps distinct session ids in distinct directories.
        safe = quote(str(session_id or ""), safe="")
        if safe in ("", ".", ".."):
            raise GenerationError(ErrorKind.STORAGE_FAILURE, f"Invalid session id: {session_id!r}")
        return self.base_dir / "images" / safe

    def path_for(self, ref: str) -> Path:
        """Map a `file://` ref to a path inside the artifact root."""
        parsed = urlparse(ref or "")
        if parsed.scheme != "file":
            raise ValueError(f"Not a local artifact reference: {ref!r}")
        path = Path(unquote(parsed.path)).resolve()
        if path != self.base_dir and self.base_dir not in path.parents:
            raise ValueError("Access denied: reference is outside the artifact directory")
        return path

    def _new_filename(self, extension: str) -> str:
        return f"{int(self.clock() * 1000)}-{uuid.uuid4().hex[:8]}{extension}"

    # ============================================================
    # Operations
    # ============================================================

    async def store(self, source: ImageSource | bytes | str, session_id: str) -> StoredArtifact:
        """Persist a backend result and return its stable reference.

        Args:
            source: `ImageSource`, raw bytes, or a URL / data URL / base64 string.
            session_id: Namespace for the artifact.

        Returns:
            `StoredArtifact` whose `ref` is a `file://` URI.
        """
        if isinstance(source, bytes):
            source = ImageSource(data=source)
        elif isinstance(source, str):
            source = ImageSource.from_reference(source)

        data = source.data
        if data is None:
            if not source.url:
                raise GenerationError(ErrorKind.MISSING_RESULT, "Image source has neither URL nor data")
            try:
                data = await self.http.get_bytes(source.url)
            except GenerationError as exc:
                raise GenerationError(
                    ErrorKind.STORAGE_FAILURE,
                    f"Could not download generated image: {exc.detail}",
                ) from exc

        extension = detect_extension(data)
        directory = self.session_dir(session_id)
        path = directory / self._new_filename(extension)

        try:
            await self.files.ensure_directory(directory)
            await self.files.write_bytes(path, data)
        except OSError as exc:
            raise GenerationError(ErrorKind.STORAGE_FAILURE, f"Could not save image: {exc}") from exc

        ref = path.as_uri()
        logger.info("Stored artifact %s (%d bytes)", path.name, len(data))
        return StoredArtifact(ref=ref, path=path)

    async def read(self, ref: str) -> bytes:
        """Return artifact bytes. Raises `FileNotFoundError` for dangling refs."""
        return await self.files.read_bytes(self.path_for(ref))

    async def exists(self, ref: str) -> bool:
        try:
            path = self.path_for(ref)
        except ValueError:
            return False
        return path.is_file()

    async def display_ref(self, ref: str | None) -> str:
        """Return `ref` when its file exists, otherwise the placeholder."""
        if ref and await self.exists(ref):
            return ref
        if ref:
            logger.warning("Artifact reference is dangling: %s", ref)
        return MISSING_IMAGE_PLACEHOLDER

    async def delete(self, ref: str) -> bool:
        """Delete an artifact. Deleting a missing artifact is not an error."""
        deleted = await self.files.delete_file(self.path_for(ref))
        if deleted:
            logger.info("Deleted artifact %s", ref)
        return deleted

    async def list(self, session_id: str) -> list[str]:
        """Return the refs of a session's artifacts, oldest first."""
        paths = await self.files.read_list(self.session_dir(session_id), IMAGE_PATTERNS)
        return [p.as_uri() for p in paths]
