"""Integration tests for model geometry loading against the fake backend."""

import pytest

from fleetdash.app.core.exceptions import DownloadError, LargeFileWarning, UserDeclinedLargeFile
from fleetdash.app.main import DashboardSession
from fleetdash.app.services.geometry import ModelGeometryLoader
from fleetdash.tests.model_files import make_stl_bytes, simple_3mf_bytes


def download_requests(backend, file_id):
    return [method for method, path in backend.requests if path == f"/api/library/download/{file_id}"]


class TestGeometryLoading:
    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_cached_geometry_skips_download(self, api_client, fake_backend):
        record = fake_backend.add_file("benchy.stl", content=make_stl_bytes())
        fake_backend.geometry[record["id"]] = (make_stl_bytes(), "application/octet-stream")

        loaded = await ModelGeometryLoader(api_client).load_geometry(record["id"], "stl")

        assert loaded.source == "geometry"
        assert loaded.face_count == 4
        assert loaded.bounds[0][1] == pytest.approx(0)
        assert download_requests(fake_backend, record["id"]) == []

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_xml_cache_falls_back_to_download(self, api_client, fake_backend):
        record = fake_backend.add_file("gear.3mf", content=simple_3mf_bytes())
        fake_backend.geometry[record["id"]] = (b"<model/>", "application/xml")

        loaded = await ModelGeometryLoader(api_client).load_geometry(record["id"], "3mf")

        assert loaded.source == "download"
        assert loaded.face_count == 4
        assert download_requests(fake_backend, record["id"]) == ["HEAD", "GET"]

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_missing_geometry_falls_back_to_download(self, api_client, fake_backend):
        record = fake_backend.add_file("benchy.stl", content=make_stl_bytes())

        loaded = await ModelGeometryLoader(api_client).load_geometry(record["id"], "stl")

        assert loaded.source == "download"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_large_file_needs_confirmation(self, api_client, fake_backend):
        content = make_stl_bytes()
        record = fake_backend.add_file("big.stl", content=content)
        loader = ModelGeometryLoader(api_client, large_file_threshold=len(content) - 1)

        with pytest.raises(LargeFileWarning) as exc_info:
            await loader.load_geometry(record["id"], "stl")
        assert exc_info.value.size_bytes == len(content)
        assert download_requests(fake_backend, record["id"]) == ["HEAD"]

        async def decline(size):
            return False

        with pytest.raises(UserDeclinedLargeFile):
            await loader.load_geometry(record["id"], "stl", confirm=decline)

        async def accept(size):
            return True

        loaded = await loader.load_geometry(record["id"], "stl", confirm=accept)
        assert loaded.face_count == 4

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_file_at_threshold_loads_without_prompt(self, api_client, fake_backend):
        content = make_stl_bytes()
        record = fake_backend.add_file("exact.stl", content=content)

        loader = ModelGeometryLoader(api_client, large_file_threshold=len(content))

        assert (await loader.load_geometry(record["id"], "stl")).face_count == 4

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_download_failure(self, api_client, fake_backend):
        record = fake_backend.add_file("gone.stl")

        with pytest.raises(DownloadError):
            await ModelGeometryLoader(api_client).load_geometry(record["id"], "stl")


class TestModelViewer:
    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_switching_models_releases_previous(self, api_client, fake_backend):
        first = fake_backend.add_file("a.stl", content=make_stl_bytes())
        second = fake_backend.add_file("b.3mf", content=simple_3mf_bytes())
        session = DashboardSession(api_client)

        viewer = await session.open_model_viewer()
        mesh_a = await viewer.open(first["id"], "stl")
        mesh_b = await viewer.open(second["id"], "3mf")

        assert mesh_a.released
        assert not mesh_b.released
        assert viewer.current is mesh_b

        await session.aclose()
        assert mesh_b.released
