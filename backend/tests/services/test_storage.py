"""Tests for the blob and metadata store backends."""

import pytest

from app.core.errors import (
    MetadataWriteError,
    NotFoundError,
    StorageDeleteError,
    StorageWriteError,
)
from app.services.storage.blob_store import BlobStore, LocalBlobStore
from app.services.storage.metadata_store import MetadataStore
from app.services.storage.records import StudyFilter

PATH = "dicom_files/Jane_Doe-1773576000000/scan.dcm"


class TestLocalBlobStore:
    """Test the filesystem blob store."""

    def test_satisfies_protocol(self, local_blob_store):
        assert isinstance(local_blob_store, BlobStore)

    @pytest.mark.asyncio
    async def test_upload_and_read(self, local_blob_store):
        await local_blob_store.upload(PATH, b"DICM")

        assert await local_blob_store.exists(PATH)
        assert await local_blob_store.read(PATH) == b"DICM"

    @pytest.mark.asyncio
    async def test_upload_never_overwrites(self, local_blob_store):
        await local_blob_store.upload(PATH, b"first")

        with pytest.raises(StorageWriteError):
            await local_blob_store.upload(PATH, b"second")

        assert await local_blob_store.read(PATH) == b"first"

    @pytest.mark.asyncio
    async def test_explicit_overwrite(self, local_blob_store):
        await local_blob_store.upload(PATH, b"first")
        await local_blob_store.upload(PATH, b"second", overwrite=True)

        assert await local_blob_store.read(PATH) == b"second"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["", "/etc/passwd", "../outside.dcm", "a/../../x.dcm"])
    async def test_paths_outside_root_refused(self, local_blob_store, path):
        with pytest.raises(StorageWriteError):
            await local_blob_store.upload(path, b"DICM")

    @pytest.mark.asyncio
    async def test_remove_prunes_empty_directories(self, local_blob_store):
        await local_blob_store.upload(PATH, b"DICM")

        await local_blob_store.remove(PATH)

        assert not await local_blob_store.exists(PATH)
        assert not (local_blob_store.storage_dir / "dicom_files").exists()
        assert local_blob_store.storage_dir.exists()

    @pytest.mark.asyncio
    async def test_remove_missing_blob_fails(self, local_blob_store):
        with pytest.raises(StorageDeleteError):
            await local_blob_store.remove(PATH)

    @pytest.mark.asyncio
    async def test_read_missing_blob(self, local_blob_store):
        with pytest.raises(NotFoundError):
            await local_blob_store.read(PATH)

    @pytest.mark.asyncio
    async def test_list_blobs_by_prefix(self, local_blob_store):
        await local_blob_store.upload(PATH, b"DICM")
        await local_blob_store.upload("other/x.dcm", b"DICM")

        blobs = await local_blob_store.list_blobs("dicom_files/")

        assert [blob.path for blob in blobs] == [PATH]
        assert blobs[0].size == 4
        assert blobs[0].modified_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_readiness(self, tmp_path):
        store = LocalBlobStore(tmp_path / "new")
        assert not store.is_ready()

        await store.initialize()

        assert store.is_ready()
        assert (tmp_path / "new").is_dir()

    def test_public_url(self, tmp_path):
        store = LocalBlobStore(tmp_path, public_base_url="https://files.example.org/")
        assert store.public_url("a/b c.dcm") == "https://files.example.org/a/b%20c.dcm"


class TestSqlAlchemyMetadataStore:
    """Test the SQL metadata store."""

    async def _insert(self, store, path: str = PATH, name: str = "Jane Doe"):
        return await store.insert(
            name=name, description="chest xray", storage_path=path, file_name="scan.dcm"
        )

    def test_satisfies_protocol(self, sql_metadata_store):
        assert isinstance(sql_metadata_store, MetadataStore)

    @pytest.mark.asyncio
    async def test_insert_assigns_id_and_timestamps(self, sql_metadata_store):
        record = await self._insert(sql_metadata_store)

        assert record.id is not None
        assert record.created_at.tzinfo is not None
        assert await sql_metadata_store.get(record.id) == record

    @pytest.mark.asyncio
    async def test_storage_path_is_unique(self, sql_metadata_store):
        await self._insert(sql_metadata_store)

        with pytest.raises(MetadataWriteError):
            await self._insert(sql_metadata_store, name="Someone Else")

    @pytest.mark.asyncio
    async def test_update_fields(self, sql_metadata_store):
        record = await self._insert(sql_metadata_store)

        updated = await sql_metadata_store.update(record.id, description="follow-up")

        assert updated.description == "follow-up"
        assert updated.name == record.name
        assert updated.created_at == record.created_at

    @pytest.mark.asyncio
    async def test_update_missing(self, sql_metadata_store):
        with pytest.raises(NotFoundError):
            await sql_metadata_store.update(7, name="x")

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, sql_metadata_store):
        record = await self._insert(sql_metadata_store)

        with pytest.raises(ValueError):
            await sql_metadata_store.update(record.id, created_at="2020-01-01")

    @pytest.mark.asyncio
    async def test_delete(self, sql_metadata_store):
        record = await self._insert(sql_metadata_store)

        await sql_metadata_store.delete(record.id)

        assert await sql_metadata_store.get(record.id) is None
        with pytest.raises(NotFoundError):
            await sql_metadata_store.delete(record.id)

    @pytest.mark.asyncio
    async def test_storage_paths(self, sql_metadata_store):
        first = await self._insert(sql_metadata_store)
        second = await self._insert(sql_metadata_store, path="dicom_files/b/scan.dcm")

        assert await sql_metadata_store.storage_paths() == {
            PATH: first.id,
            "dicom_files/b/scan.dcm": second.id,
        }

    @pytest.mark.asyncio
    async def test_ties_ordered_by_id(self, sql_metadata_store, backdate, clock):
        first = await self._insert(sql_metadata_store)
        second = await self._insert(sql_metadata_store, path="dicom_files/b/scan.dcm")
        await backdate(first.id, clock())
        await backdate(second.id, clock())

        records = await sql_metadata_store.query(StudyFilter())

        assert [r.id for r in records] == [second.id, first.id]
