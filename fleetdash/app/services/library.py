"""Library mutation service.

Wraps the library endpoints with client-side validation, set semantics for
tags and batch helpers. The backend stays the source of truth: after a
mutation the affected record is re-fetched rather than patched locally.
"""

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from pydantic import ValidationError as PydanticValidationError

from fleetdash.app.core.config import settings
from fleetdash.app.core.exceptions import (
    AuthenticationRequired,
    BackendError,
    BatchResult,
    FleetDashError,
    ValidationError,
)
from fleetdash.app.schemas.library import (
    AutoTagJob,
    AutoTagResult,
    DuplicateGroup,
    LibraryFile,
    ScanResult,
    parse_tags,
)
from fleetdash.app.services.api_client import FleetApiClient
from fleetdash.app.services.duplicates import DeletionPlan, GroupBy
from fleetdash.app.services.notices import NoticeBoard

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".stl", ".3mf", ".gcode")


def validate_upload_name(filename: str) -> str:
    """Return the lowercased extension, or raise ValidationError if unsupported."""
    if not filename or not filename.strip():
        raise ValidationError("Upload needs a file name")
    extension = PurePosixPath(filename.strip()).suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise ValidationError(
            f"Unsupported file type {extension or '(none)'} for {filename}; "
            f"expected one of {', '.join(SUPPORTED_EXTENSIONS)}"
        )
    return extension


SORT_KEYS = {
    "name": lambda f: f.display_name.casefold(),
    "size": lambda f: f.file_size,
    "date": lambda f: f.created_at.timestamp() if f.created_at else 0.0,
}


def filter_files(
    files: Iterable[LibraryFile],
    query: str | None = None,
    *,
    file_type: str | None = None,
    min_size_mb: float | None = None,
    max_size_mb: float | None = None,
    sort_by: str = "date",
    descending: bool = True,
) -> list[LibraryFile]:
    """Search and sort a library listing.

    The query matches case-insensitively against the name, description and
    tags. Size bounds are inclusive and given in MiB; a falsy bound is ignored.
    """
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown sort key {sort_by!r}; expected one of {', '.join(SORT_KEYS)}")
    needle = (query or "").strip().casefold()
    file_type = (file_type or "").lower().lstrip(".")
    if file_type == "all":
        file_type = ""

    def matches(file: LibraryFile) -> bool:
        if needle and not (
            needle in file.display_name.casefold()
            or needle in file.description.casefold()
            or any(needle in tag.casefold() for tag in file.tags)
        ):
            return False
        if file_type and file.file_type != file_type:
            return False
        if min_size_mb and file.file_size < min_size_mb * 1024 * 1024:
            return False
        if max_size_mb and file.file_size > max_size_mb * 1024 * 1024:
            return False
        return True

    return sorted((f for f in files if matches(f)), key=SORT_KEYS[sort_by], reverse=descending)


class LibraryService:
    """Mutations and queries on the model library."""

    def __init__(
        self,
        client: FleetApiClient,
        *,
        notices: NoticeBoard | None = None,
        auto_tag_timeout: float | None = None,
    ):
        self.client = client
        self.notices = notices
        self.auto_tag_timeout = auto_tag_timeout if auto_tag_timeout is not None else settings.auto_tag_timeout

    def _notify(self, message: str, level: str = "info"):
        if self.notices is not None:
            self.notices.post(message, level=level, source="library")

    # ============ Queries ============

    async def list_files(self) -> list[LibraryFile]:
        files = []
        for raw in await self.client.list_library():
            try:
                files.append(LibraryFile.model_validate(raw))
            except PydanticValidationError as e:
                logger.warning("Skipping malformed library record: %s", e.errors()[0]["msg"])
        return files

    async def get_file(self, file_id: int) -> LibraryFile:
        """Re-fetch one file from the backend listing."""
        for file in await self.list_files():
            if file.id == file_id:
                return file
        raise BackendError(404, f"Library file {file_id} not found")

    async def search(self, query: str | None = None, **filters) -> list[LibraryFile]:
        """Fetch the listing and apply ``filter_files`` to it."""
        return filter_files(await self.list_files(), query, **filters)

    async def fetch_duplicates(self, mode: GroupBy | str = GroupBy.NAME) -> list[DuplicateGroup]:
        """Duplicate groups as computed by the backend itself."""
        mode = GroupBy(mode)
        payload = await self.client.get_duplicates(mode.value)
        raw_groups = payload.get("duplicates", []) if isinstance(payload, dict) else payload
        groups = []
        for raw in raw_groups or []:
            try:
                group = DuplicateGroup.model_validate(raw)
            except PydanticValidationError as e:
                logger.warning("Skipping malformed duplicate group: %s", e.errors()[0]["msg"])
                continue
            if len(group.members) >= 2:
                groups.append(group)
        groups.sort(key=lambda g: (-g.total_size, g.group_key))
        return groups

    # ============ Upload ============

    async def upload(
        self,
        filename: str,
        content: bytes,
        description: str = "",
        tags: Iterable[str] = (),
    ) -> LibraryFile:
        """Upload one model file. The extension is checked before anything is sent."""
        validate_upload_name(filename)
        tag_set = parse_tags(list(tags))
        result = await self.client.upload_library_file(filename, content, description=description, tags=tag_set)
        logger.info("Uploaded %s (%d bytes)", filename, len(content))

        file_id = result.get("id") if isinstance(result, dict) else None
        if file_id is None:
            raise BackendError(200, f"Upload of {filename} returned no file id", result if isinstance(result, dict) else None)
        try:
            return await self.get_file(int(file_id))
        except BackendError:
            # Listing may lag behind the upload; fall back to the upload response
            return LibraryFile.model_validate(
                {
                    "originalName": filename,
                    "fileSize": len(content),
                    "description": description,
                    "tags": sorted(tag_set),
                    **result,
                }
            )

    async def upload_path(self, path: Path | str, description: str = "", tags: Iterable[str] = ()) -> LibraryFile:
        path = Path(path)
        validate_upload_name(path.name)
        return await self.upload(path.name, path.read_bytes(), description=description, tags=tags)

    async def upload_many(self, paths: Iterable[Path | str]) -> BatchResult:
        """Upload several files one after another, counting failures."""
        result = BatchResult()
        for path in paths:
            try:
                await self.upload_path(path)
            except AuthenticationRequired:
                raise
            except (FleetDashError, OSError) as e:
                logger.warning("Upload of %s failed: %s", path, e)
                result.record_failure(Path(path).name, e)
            else:
                result.record_success()
        self._notify(result.summary("Uploaded"), "warning" if result.failed else "info")
        return result

    # ============ Metadata ============

    async def patch_metadata(
        self,
        file_id: int,
        description: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> LibraryFile:
        """Update description and/or tags, then return the re-fetched record.

        Tags replace the existing set: they are trimmed, deduplicated and sent sorted.
        """
        if description is None and tags is None:
            raise ValidationError("Nothing to update: pass a description and/or tags")
        if description is not None:
            await self.client.patch_library_file(file_id, {"description": description})
        if tags is not None:
            await self.client.put_library_tags(file_id, parse_tags(list(tags)))
        logger.debug("Updated metadata for library file %s", file_id)
        return await self.get_file(file_id)

    async def auto_tag(self, file_id: int) -> AutoTagResult:
        """Ask the backend to suggest a description and tags. May take a while."""
        payload = await self.client.auto_tag(file_id, timeout=self.auto_tag_timeout)
        if isinstance(payload, dict) and payload.get("success") is False:
            raise BackendError(200, payload.get("error") or "Auto-tag failed", payload)
        return AutoTagResult.model_validate(payload)

    async def auto_tag_all(self) -> AutoTagJob:
        """Start the backend's auto-tag job over the whole library.

        The backend answers as soon as the job is queued; poll
        ``auto_tag_status`` for progress.
        """
        payload = await self.client.auto_tag_all(timeout=self.auto_tag_timeout)
        if not isinstance(payload, dict):
            raise BackendError(200, "Unexpected auto-tag response")
        if payload.get("success") is False:
            raise BackendError(200, payload.get("error") or payload.get("message") or "Auto-tag failed", payload)

        job = AutoTagJob.model_validate({**(payload.get("status") or {}), "message": payload.get("message")})
        message = job.message or f"Auto-tag started for {job.total} file(s)"
        logger.info(message)
        self._notify(message)
        return job

    async def auto_tag_status(self) -> AutoTagJob:
        return AutoTagJob.model_validate(await self.client.auto_tag_status())

    async def apply_auto_tag(self, file_id: int) -> LibraryFile:
        """Run auto-tag and save its suggestions, merging with the existing tags."""
        suggestion = await self.auto_tag(file_id)
        current = await self.get_file(file_id)
        return await self.patch_metadata(
            file_id,
            description=suggestion.description or None,
            tags=current.tags | set(suggestion.tags),
        )

    async def add_tags(self, file_ids: Iterable[int], tags: Iterable[str]) -> BatchResult:
        """Add tags to several files, keeping the tags each file already has."""
        new_tags = parse_tags(list(tags))
        if not new_tags:
            raise ValidationError("No tags to add")
        files = {f.id: f for f in await self.list_files()}

        result = BatchResult()
        for file_id in file_ids:
            file = files.get(file_id)
            if file is None:
                result.record_failure(file_id, BackendError(404, f"Library file {file_id} not found"))
                continue
            try:
                await self.client.put_library_tags(file_id, file.tags | new_tags)
            except AuthenticationRequired:
                raise
            except FleetDashError as e:
                result.record_failure(file_id, e)
            else:
                result.record_success()
        self._notify(result.summary("Tagged"), "warning" if result.failed else "info")
        return result

    # ============ Delete ============

    async def delete(self, file_id: int):
        await self.client.delete_library_file(file_id)
        logger.info("Deleted library file %s", file_id)

    async def delete_many(self, file_ids: Iterable[int]) -> BatchResult:
        """Delete files concurrently, one request per id, and count failures."""
        file_ids = list(dict.fromkeys(file_ids))
        outcomes = await asyncio.gather(
            *(self.client.delete_library_file(file_id) for file_id in file_ids),
            return_exceptions=True,
        )
        for outcome in outcomes:
            # Session expired mid-batch: not a per-file failure
            if isinstance(outcome, AuthenticationRequired):
                raise outcome

        result = BatchResult()
        for file_id, outcome in zip(file_ids, outcomes):
            if isinstance(outcome, FleetDashError):
                logger.warning("Failed to delete library file %s: %s", file_id, outcome)
                result.record_failure(file_id, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.record_success()
        logger.info(result.summary("Deleted"))
        self._notify(result.summary("Deleted"), "warning" if result.failed else "info")
        return result

    async def execute_deletion_plan(self, plan: DeletionPlan, *, confirmed: bool = False) -> BatchResult:
        """Delete the files a plan suggests. Refuses unless ``confirmed`` is True."""
        if not confirmed:
            raise ValidationError("Deleting duplicates requires explicit confirmation")
        if not plan.delete:
            return BatchResult()
        return await self.delete_many(plan.file_ids)

    # ============ Scan ============

    async def scan_folder(self) -> ScanResult:
        payload = await self.client.scan_library()
        result = ScanResult.model_validate(payload)
        logger.info("Library scan added %d file(s)", result.added)
        self._notify(result.message or f"Scan complete: {result.added} file(s) added")
        return result
