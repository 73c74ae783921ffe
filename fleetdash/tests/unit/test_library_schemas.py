"""Unit tests for library schemas."""

from fleetdash.app.schemas.library import (
    AutoTagJob,
    AutoTagResult,
    DuplicateGroup,
    LibraryFile,
    ScanResult,
    parse_tags,
)


class TestParseTags:
    def test_comma_string(self):
        assert parse_tags("benchy, boat,,  calibration ") == {"benchy", "boat", "calibration"}

    def test_list_deduplicates(self):
        assert parse_tags(["a", " a", "b", ""]) == {"a", "b"}

    def test_none(self):
        assert parse_tags(None) == set()


class TestLibraryFile:
    def test_backend_record(self):
        file = LibraryFile.model_validate(
            {
                "id": 12,
                "fileName": "1700000000-benchy.3mf",
                "originalName": "Benchy.3MF",
                "fileType": "3MF",
                "fileSize": 2048,
                "fileHash": "abc123",
                "description": None,
                "tags": "boat,benchy",
                "createdAt": "2024-03-01T10:00:00",
            }
        )

        assert file.display_name == "Benchy.3MF"
        assert file.file_type == "3mf"
        assert file.content_hash == "abc123"
        assert file.description == ""
        assert file.tags == {"boat", "benchy"}
        assert file.created_at.year == 2024

    def test_duplicates_endpoint_shape(self):
        file = LibraryFile.model_validate(
            {"id": 3, "filename": "part (2).stl", "filesize": None, "filetype": "stl", "tags": ""}
        )

        assert file.file_name == "part (2).stl"
        assert file.file_size == 0
        assert file.tags == set()

    def test_file_type_derived_from_name(self):
        file = LibraryFile.model_validate({"id": 1, "originalName": "bracket.STL"})
        assert file.file_type == "stl"

    def test_empty_hash_is_none(self):
        assert LibraryFile.model_validate({"id": 1, "fileHash": ""}).content_hash is None


class TestAutoTagResult:
    def test_tags_deduplicated_in_order(self):
        result = AutoTagResult.model_validate(
            {"success": True, "description": "A boat", "tags": ["boat", "benchy", "boat", " "], "metadata": {}}
        )
        assert result.tags == ["boat", "benchy"]
        assert result.description == "A boat"


class TestAutoTagJob:
    def test_status_payload(self):
        job = AutoTagJob.model_validate(
            {"running": True, "total": 3, "processed": 2, "updated": 1, "errors": 0, "currentFile": "gear.3mf", "startTime": 1}
        )
        assert job.current_file == "gear.3mf"
        assert job.percent_complete == 67

    def test_empty_library(self):
        assert AutoTagJob.model_validate({"running": False, "total": 0}).percent_complete == 0


class TestScanResult:
    def test_top_level_added(self):
        assert ScanResult.model_validate({"added": 4}).added == 4

    def test_unwraps_job_status(self):
        result = ScanResult.model_validate(
            {"success": True, "message": "Scan complete", "status": {"added": 3, "skipped": 2, "total": 5}}
        )
        assert result.added == 3
        assert result.skipped == 2
        assert result.message == "Scan complete"


class TestDuplicateGroup:
    def test_backend_group(self):
        group = DuplicateGroup.model_validate(
            {
                "name": "benchy.stl",
                "files": [
                    {"id": 9, "filename": "benchy (2).stl", "filesize": 100},
                    {"id": 4, "filename": "benchy.stl", "filesize": 100},
                ],
                "totalSize": 200,
            }
        )

        assert group.group_key == "benchy.stl"
        assert group.name == "benchy.stl"
        assert [f.id for f in group.members] == [4, 9]
        assert group.original.id == 4
        assert group.total_size == 200

    def test_hash_group_shape(self):
        group = DuplicateGroup.model_validate(
            {"hash": "deadbeef", "count": 2, "models": [{"id": 2, "fileSize": 5}, {"id": 1, "fileSize": 5}]}
        )

        assert group.group_key == "deadbeef"
        assert group.original.id == 1
        assert group.total_size == 10
