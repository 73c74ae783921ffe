"""Duplicate detection over library files.

Groups files by content hash, normalized name or exact size and proposes
which copies could be removed. Nothing here deletes anything: deletion plans
are suggestions that ``LibraryService.execute_deletion_plan`` only acts on
after explicit confirmation.
"""

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

from fleetdash.app.core.config import settings
from fleetdash.app.schemas.library import DuplicateGroup, LibraryFile

logger = logging.getLogger(__name__)

NamePolicy = Callable[[str], str]


class GroupBy(str, Enum):
    HASH = "hash"
    NAME = "name"
    SIZE = "size"


# "part (2).stl" / "part(3)" style download copy suffixes
_COPY_SUFFIX_BEFORE_EXT = re.compile(r"\(\d+\)\.")
_COPY_SUFFIX_AT_END = re.compile(r"\(\d+\)$")
_COPY_WORD_SUFFIX = re.compile(r"(?:[\s_-]*\(\d+\)|[\s_-]+copy(?:\s*\d+)?)+$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def normalize_name_copy_suffix(name: str) -> str:
    """Strip a "(N)" copy suffix, collapse whitespace and lowercase. Keeps the extension."""
    name = _COPY_SUFFIX_BEFORE_EXT.sub(".", name, count=1)
    name = _COPY_SUFFIX_AT_END.sub("", name)
    return _WHITESPACE.sub(" ", name).lower().strip()


def normalize_name_alphanumeric(name: str) -> str:
    """Drop the extension and copy suffixes, casefold, keep only letters and digits.

    "Benchy (2).stl", "benchy_copy.3mf" and "BENCHY.stl" all normalize to "benchy".
    """
    stem = PurePosixPath(name.strip()).stem if "." in name else name.strip()
    stem = _COPY_WORD_SUFFIX.sub("", stem)
    return "".join(ch for ch in stem.casefold() if ch.isalnum())


NAME_POLICIES: dict[str, NamePolicy] = {
    "alphanumeric": normalize_name_alphanumeric,
    "copy_suffix": normalize_name_copy_suffix,
}


def resolve_name_policy(policy: str | NamePolicy | None = None) -> NamePolicy:
    if policy is None:
        policy = settings.duplicate_name_policy
    if callable(policy):
        return policy
    try:
        return NAME_POLICIES[policy]
    except KeyError:
        raise ValueError(f"Unknown duplicate name policy: {policy}") from None


def format_file_size(size: int) -> str:
    """Human-readable size with two decimals, e.g. "2.00 MB"."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    index = 0
    while size >= 1024 ** (index + 1) and index < len(units) - 1:
        index += 1
    return f"{size / 1024**index:.2f} {units[index]}"


def _strip_copy_suffix(name: str) -> str:
    return _COPY_SUFFIX_AT_END.sub("", _COPY_SUFFIX_BEFORE_EXT.sub(".", name, count=1))


def group_duplicates(
    files: Iterable[LibraryFile],
    mode: GroupBy | str,
    *,
    name_policy: str | NamePolicy | None = None,
) -> list[DuplicateGroup]:
    """Group files that look like duplicates of each other.

    Only groups with at least two members are returned, ordered by total size
    (largest first) and then by key. Files that cannot be keyed in the chosen
    mode (no hash, no name, zero size) never join a group.
    """
    mode = GroupBy(mode)
    normalize = resolve_name_policy(name_policy) if mode == GroupBy.NAME else None

    buckets: dict[str, list[LibraryFile]] = {}
    for file in files:
        if mode == GroupBy.HASH:
            key = file.content_hash
        elif mode == GroupBy.NAME:
            key = normalize(file.display_name) if file.display_name else None
        else:
            key = str(file.file_size) if file.file_size else None
        if not key:
            continue
        buckets.setdefault(key, []).append(file)

    groups = []
    for key, members in buckets.items():
        if len(members) < 2:
            continue
        members = sorted(members, key=lambda f: f.id)
        first_name = members[0].display_name or "Unknown"
        if mode == GroupBy.HASH:
            name = first_name
            reason = "Identical file content"
        elif mode == GroupBy.NAME:
            name = _strip_copy_suffix(first_name)
            reason = "Same file name"
        else:
            name = f"{format_file_size(members[0].file_size)} - {first_name}"
            reason = "Same file size"
        groups.append(
            DuplicateGroup(
                group_key=key,
                name=name,
                members=members,
                reason=reason,
                total_size=sum(f.file_size for f in members),
            )
        )

    groups.sort(key=lambda g: (-g.total_size, g.group_key))
    logger.debug("Found %d duplicate group(s) by %s", len(groups), mode.value)
    return groups


def select_for_deletion(group: DuplicateGroup) -> list[LibraryFile]:
    """Every member except the original (lowest id)."""
    return list(group.members[1:])


def select_all_for_deletion(groups: Iterable[DuplicateGroup]) -> list[LibraryFile]:
    """Union of deletion candidates across groups, never including any group's original.

    A file can appear in several groups (e.g. same size and same name); it is
    kept if it is the original of any of them.
    """
    groups = list(groups)
    originals = {group.original.id for group in groups if group.members}
    candidates: dict[int, LibraryFile] = {}
    for group in groups:
        for file in select_for_deletion(group):
            if file.id not in originals:
                candidates[file.id] = file
    return [candidates[file_id] for file_id in sorted(candidates)]


@dataclass
class DeletionPlan:
    """Suggested cleanup. Executing it requires explicit confirmation."""

    keep: list[LibraryFile] = field(default_factory=list)
    delete: list[LibraryFile] = field(default_factory=list)
    reclaimable_bytes: int = 0

    @property
    def file_ids(self) -> list[int]:
        return [f.id for f in self.delete]

    def __bool__(self) -> bool:
        return bool(self.delete)


def suggest_deletion(groups: Iterable[DuplicateGroup]) -> DeletionPlan:
    groups = list(groups)
    delete = select_all_for_deletion(groups)
    delete_ids = {f.id for f in delete}
    keep: dict[int, LibraryFile] = {}
    for group in groups:
        for file in group.members:
            if file.id not in delete_ids:
                keep[file.id] = file
    return DeletionPlan(
        keep=[keep[file_id] for file_id in sorted(keep)],
        delete=delete,
        reclaimable_bytes=sum(f.file_size for f in delete),
    )
