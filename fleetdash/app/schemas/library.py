"""Pydantic schemas for library (model file) functionality."""

from datetime import datetime
from pathlib import PurePosixPath

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

# ============ Helpers ============


def parse_tags(value) -> set[str]:
    """Accept tags as a list/set or the backend's comma-separated string."""
    if value is None:
        return set()
    if isinstance(value, str):
        value = value.split(",")
    return {str(tag).strip() for tag in value if tag is not None and str(tag).strip()}


def file_type_from_name(name: str | None) -> str:
    if not name:
        return ""
    return PurePosixPath(name).suffix.lower().lstrip(".")


# ============ File Schemas ============


class LibraryFile(BaseModel):
    """A persisted model/asset in the library."""

    id: int
    file_name: str = Field("", validation_alias=AliasChoices("file_name", "fileName"))
    original_name: str | None = Field(
        None, validation_alias=AliasChoices("original_name", "originalName", "filename")
    )
    file_type: str = Field("", validation_alias=AliasChoices("file_type", "fileType", "filetype"))
    file_size: int = Field(
        0, validation_alias=AliasChoices("file_size", "fileSize", "fileSizeBytes", "filesize", "size")
    )
    content_hash: str | None = Field(
        None, validation_alias=AliasChoices("content_hash", "contentHash", "fileHash", "file_hash", "hash")
    )
    description: str = ""
    tags: set[str] = set()
    created_at: datetime | None = Field(
        None, validation_alias=AliasChoices("created_at", "createdAt", "upload_date")
    )

    @field_validator("tags", mode="before")
    @classmethod
    def _parse_tags(cls, value):
        return parse_tags(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description_default(cls, value):
        return value or ""

    @field_validator("file_size", mode="before")
    @classmethod
    def _size_default(cls, value):
        return value or 0

    @field_validator("content_hash", mode="before")
    @classmethod
    def _empty_hash(cls, value):
        return value or None

    @model_validator(mode="after")
    def _fill_derived(self):
        if not self.file_name and self.original_name:
            self.file_name = self.original_name
        if not self.file_type:
            self.file_type = file_type_from_name(self.original_name or self.file_name)
        else:
            self.file_type = self.file_type.lower()
        return self

    @property
    def display_name(self) -> str:
        return self.original_name or self.file_name


class AutoTagResult(BaseModel):
    """Result of the backend's auto-tag enrichment."""

    description: str = ""
    tags: list[str] = []
    metadata: dict | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value):
        seen: list[str] = []
        for tag in value or []:
            tag = str(tag).strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class AutoTagJob(BaseModel):
    """Progress of the backend's library-wide auto-tag job."""

    running: bool = False
    total: int = 0
    processed: int = 0
    updated: int = 0
    errors: int = 0
    current_file: str | None = Field(None, validation_alias=AliasChoices("current_file", "currentFile"))
    message: str | None = None

    @property
    def percent_complete(self) -> int:
        if not self.total:
            return 0
        return round(self.processed * 100 / self.total)


class ScanResult(BaseModel):
    """Outcome of a library folder scan."""

    added: int = 0
    skipped: int | None = None
    total: int | None = None
    message: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_job_status(cls, data):
        # Background scan jobs report counters under "status"
        if isinstance(data, dict) and "added" not in data and isinstance(data.get("status"), dict):
            status = data["status"]
            return {
                "added": status.get("added", 0),
                "skipped": status.get("skipped"),
                "total": status.get("total"),
                "message": data.get("message"),
            }
        return data


# ============ Duplicate Schemas ============


class DuplicateGroup(BaseModel):
    """Library files grouped as probable duplicates. Members are sorted by id (oldest first)."""

    group_key: str = Field(validation_alias=AliasChoices("group_key", "groupKey", "name", "hash"))
    name: str = ""
    members: list[LibraryFile] = Field(validation_alias=AliasChoices("members", "files", "models"))
    reason: str | None = None
    total_size: int = Field(0, validation_alias=AliasChoices("total_size", "totalSize"))

    @model_validator(mode="before")
    @classmethod
    def _name_defaults_to_key(cls, data):
        if isinstance(data, dict) and not data.get("name"):
            data = dict(data)
            data["name"] = data.get("group_key") or data.get("groupKey") or data.get("hash") or ""
        return data

    @field_validator("members")
    @classmethod
    def _sort_members(cls, members: list[LibraryFile]) -> list[LibraryFile]:
        return sorted(members, key=lambda f: f.id)

    @model_validator(mode="after")
    def _fill_total(self):
        if not self.total_size:
            self.total_size = sum(f.file_size for f in self.members)
        return self

    @property
    def original(self) -> LibraryFile:
        return self.members[0]
