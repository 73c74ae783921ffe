"""Model geometry loading for the 3D viewer.

Geometry is fetched from the backend's pre-extracted geometry cache first.
When that cache only holds raw 3MF XML (or nothing), the loader falls back to
downloading the full file, after checking its size against the large-file
threshold so a multi-hundred-megabyte model is never pulled without consent.
"""

import asyncio
import io
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import numpy as np
import trimesh

from fleetdash.app.core.config import settings
from fleetdash.app.core.exceptions import (
    BackendError,
    DownloadError,
    LargeFileWarning,
    NetworkError,
    ParseError,
    UserDeclinedLargeFile,
    ValidationError,
)
from fleetdash.app.services.api_client import FleetApiClient
from fleetdash.app.utils.threemf_tools import extract_mesh_from_3mf

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("stl", "3mf")

ConfirmCallback = Callable[[int], Awaitable[bool]]


@dataclass
class LoadedMesh:
    """A normalized, renderable mesh and its bounding sphere."""

    file_id: int
    mesh: trimesh.Trimesh | None
    source: str  # "geometry" or "download"
    bounds: np.ndarray
    sphere_center: np.ndarray
    sphere_radius: float

    @property
    def released(self) -> bool:
        return self.mesh is None

    @property
    def vertex_count(self) -> int:
        return 0 if self.mesh is None else len(self.mesh.vertices)

    @property
    def face_count(self) -> int:
        return 0 if self.mesh is None else len(self.mesh.faces)

    def release(self):
        """Drop the mesh buffers. Safe to call more than once."""
        if self.mesh is not None:
            logger.debug("Releasing mesh for file %s", self.file_id)
            self.mesh = None


def parse_stl(data: bytes) -> trimesh.Trimesh:
    """Parse binary or ASCII STL bytes."""
    try:
        mesh = trimesh.load_mesh(io.BytesIO(data), file_type="stl")
    except Exception as e:
        raise ParseError(f"Invalid STL data: {e}") from e
    if not isinstance(mesh, trimesh.Trimesh) or len(mesh.vertices) == 0 or len(mesh.faces) == 0:
        raise ParseError("STL contains no triangles")
    return mesh


def parse_3mf(data: bytes) -> trimesh.Trimesh:
    """Parse a 3MF package and convert it from Z-up to the viewer's Y-up frame."""
    vertices, faces = extract_mesh_from_3mf(data)
    # Rotate -90 degrees about X: (x, y, z) -> (x, z, -y)
    rotated = np.column_stack([vertices[:, 0], vertices[:, 2], -vertices[:, 1]])
    return trimesh.Trimesh(vertices=rotated, faces=faces, process=False)


def normalize_mesh(mesh: trimesh.Trimesh, file_id: int, source: str) -> LoadedMesh:
    """Center the mesh on X/Z, rest it on Y=0 and compute its bounding sphere."""
    vertices = np.asarray(mesh.vertices, dtype=float)
    lower = vertices.min(axis=0)
    upper = vertices.max(axis=0)
    offset = np.array([-(lower[0] + upper[0]) / 2, -lower[1], -(lower[2] + upper[2]) / 2])
    mesh.apply_translation(offset)

    bounds = np.array([lower + offset, upper + offset])
    center = bounds.mean(axis=0)
    radius = float(np.linalg.norm(bounds[1] - bounds[0]) / 2)
    return LoadedMesh(
        file_id=file_id,
        mesh=mesh,
        source=source,
        bounds=bounds,
        sphere_center=center,
        sphere_radius=radius,
    )


class ModelGeometryLoader:
    """Load library models as normalized meshes."""

    def __init__(
        self,
        client: FleetApiClient,
        *,
        large_file_threshold: int | None = None,
        download_timeout: float | None = None,
    ):
        self.client = client
        self.large_file_threshold = (
            large_file_threshold if large_file_threshold is not None else settings.large_file_threshold
        )
        self.download_timeout = download_timeout if download_timeout is not None else settings.download_timeout

    async def load_geometry(
        self,
        file_id: int,
        file_type: str,
        *,
        confirm: ConfirmCallback | None = None,
        allow_large: bool = False,
        timeout: float | None = None,
    ) -> LoadedMesh:
        """Load a model, preferring the pre-extracted geometry endpoint.

        Args:
            file_id: Library file id
            file_type: "stl" or "3mf"
            confirm: Awaited with the file size when the download exceeds the
                large-file threshold; returning False cancels the load
            allow_large: Skip the size gate entirely
            timeout: Download timeout override

        Raises:
            ValidationError: Unsupported file type (nothing is fetched)
            LargeFileWarning: File is over the threshold and no confirmation was given
            UserDeclinedLargeFile: The confirm callback declined
            DownloadError: The full download failed
            ParseError: The downloaded content could not be parsed
        """
        file_type = (file_type or "").lower().lstrip(".")
        if file_type not in SUPPORTED_TYPES:
            raise ValidationError(f"Unsupported model type for preview: {file_type or 'unknown'}")

        mesh = await self._try_geometry_endpoint(file_id)
        if mesh is not None:
            return normalize_mesh(mesh, file_id, "geometry")

        size = await self._declared_size(file_id)
        if size > self.large_file_threshold and not allow_large:
            if confirm is None:
                raise LargeFileWarning(size, self.large_file_threshold)
            if not await confirm(size):
                logger.info("Loading of file %s (%d bytes) declined", file_id, size)
                raise UserDeclinedLargeFile(size)

        try:
            data = await self.client.download(file_id, timeout=timeout or self.download_timeout)
        except (NetworkError, BackendError) as e:
            raise DownloadError(file_id, str(e)) from e

        if file_type == "3mf":
            mesh = parse_3mf(data)
        else:
            mesh = parse_stl(data)
        logger.info("Loaded file %s from full download (%d bytes, %d faces)", file_id, len(data), len(mesh.faces))
        return normalize_mesh(mesh, file_id, "download")

    async def _try_geometry_endpoint(self, file_id: int) -> trimesh.Trimesh | None:
        try:
            response = await self.client.get_geometry(file_id)
        except BackendError as e:
            logger.debug("No cached geometry for file %s: %s", file_id, e)
            return None

        content_type = response.headers.get("content-type", "")
        if "xml" in content_type.lower():
            # Cache holds raw 3MF model XML, which needs the full package
            logger.debug("Cached geometry for file %s is XML, falling back to download", file_id)
            return None
        try:
            return parse_stl(response.content)
        except ParseError as e:
            logger.warning("Cached geometry for file %s is unreadable, falling back to download: %s", file_id, e)
            return None

    async def _declared_size(self, file_id: int) -> int:
        try:
            size = await self.client.head_download(file_id)
        except BackendError as e:
            # HEAD unsupported or refused; size unknown counts as 0
            logger.warning("Size check for file %s failed, downloading without it: %s", file_id, e)
            return 0
        except NetworkError as e:
            raise DownloadError(file_id, f"size check failed: {e}") from e
        return size or 0


class ModelViewerSession:
    """Single-model viewer state: at most one live mesh and one in-flight load."""

    def __init__(self, loader: ModelGeometryLoader):
        self.loader = loader
        self.current: LoadedMesh | None = None
        self._pending: asyncio.Task | None = None
        self._closed = False

    @property
    def loading(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def open(self, file_id: int, file_type: str, **kwargs) -> LoadedMesh:
        """Load a model and substitute it for the current one.

        A load already in flight is cancelled first. The previous mesh is
        released before the new one takes its place.
        """
        if self._closed:
            raise RuntimeError("Model viewer session is closed")
        await self._cancel_pending()

        task = asyncio.create_task(self.loader.load_geometry(file_id, file_type, **kwargs))
        self._pending = task
        try:
            loaded = await task
        finally:
            if self._pending is task:
                self._pending = None

        if self._closed:
            # Closed while the load was finishing
            loaded.release()
            raise asyncio.CancelledError()

        if self.current is not None:
            self.current.release()
        self.current = loaded
        return loaded

    async def close(self):
        """Abort any in-flight load and release the current mesh."""
        self._closed = True
        await self._cancel_pending()
        if self.current is not None:
            self.current.release()
            self.current = None

    async def _cancel_pending(self):
        task, self._pending = self._pending, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Cancelled model load ended with %s", e)
