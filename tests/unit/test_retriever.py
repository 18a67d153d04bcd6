"""Unit tests for ArchiveRetriever using a mocked HTTP transport."""

from __future__ import annotations

import io
import os
import time
import zipfile
from datetime import datetime
from pathlib import Path

import httpx
import pytest

from marketetl.config import ArchiveConfig
from marketetl.pipeline.assets import STOCK_SEP, AssetDescriptor
from marketetl.pipeline.retriever import (
    ArchiveRetriever,
    create_share_id,
    decode_share_id,
    parse_last_modified,
    select_latest,
)
from marketetl.pipeline.types import ArchiveFileDescriptor

API = "https://api.test/v1.0"
CSV_PAYLOAD = b"ticker,date,close\nAAPL,2024-01-02,152\n"


def _zip_bytes(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def _listing(*children: dict) -> dict:
    return {"name": "Sharadar", "children": list(children)}


def _child(name: str, modified: str, url: str | None = None, item_id: str | None = None) -> dict:
    child = {"name": name, "lastModifiedDateTime": modified}
    if url:
        child["@microsoft.graph.downloadUrl"] = url
    if item_id:
        child["id"] = item_id
    return child


@pytest.fixture
def archive_config(tmp_path: Path) -> ArchiveConfig:
    return ArchiveConfig(
        folder_url="https://1drv.ms/f/s!test-folder",
        api_base_url=API,
        scratch_dir=tmp_path / "scratch",
    )


def _retriever(config: ArchiveConfig, routes: dict[str, httpx.Response]) -> ArchiveRetriever:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        requested.append(key)
        if key in routes:
            return routes[key]
        return httpx.Response(404, text="not found")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    retriever = ArchiveRetriever(config, client=client)
    retriever.requested = requested
    return retriever


class TestShareId:
    def test_known_values(self):
        assert create_share_id("a") == "u!YQ=="
        assert create_share_id("?>?") == "u!Pz4_"
        assert create_share_id("~~~") == "u!fn5-"

    def test_round_trip(self):
        link = "https://1drv.ms/f/s!AvYU2LBfd0QYgYBCtbRmcfcayPDXsA?e=x5bnA0"
        share_id = create_share_id(link)

        assert share_id.startswith("u!")
        assert "/" not in share_id and "+" not in share_id
        assert decode_share_id(share_id) == link

    def test_decode_rejects_other_ids(self):
        with pytest.raises(ValueError):
            decode_share_id("abc")


class TestSelectLatest:
    def test_newest_matching_tag(self):
        files = [
            ArchiveFileDescriptor("SHARADAR_SEP_1.zip", datetime(2024, 1, 1), "u1"),
            ArchiveFileDescriptor("sharadar_sep_2.zip", datetime(2024, 3, 1), "u2"),
            ArchiveFileDescriptor("SHARADAR_SFP.zip", datetime(2024, 6, 1), "u3"),
        ]

        assert select_latest(files, "SEP").download_url == "u2"
        assert select_latest(files, "SFP").download_url == "u3"
        assert select_latest(files, "DAILY") is None

    def test_parse_last_modified(self):
        assert parse_last_modified("2024-03-01T12:30:00.123Z") == datetime(2024, 3, 1, 12, 30, 0, 123000)
        assert parse_last_modified("2024-03-01T12:30:00+02:00") == datetime(2024, 3, 1, 12, 30)


class TestListArchives:
    @pytest.mark.asyncio
    async def test_filters_children(self, archive_config: ArchiveConfig):
        share_id = create_share_id(archive_config.folder_url)
        listing = _listing(
            _child("SEP_1.zip", "2024-01-01T00:00:00Z", url="https://cdn.test/sep1"),
            _child("SEP_2.ZIP", "2024-02-01T00:00:00Z", item_id="ABC"),
            _child("notes.txt", "2024-02-01T00:00:00Z", url="https://cdn.test/notes"),
            _child("SEP_3.zip", "2024-02-01T00:00:00Z"),
            _child("SEP_4.zip", "yesterday", url="https://cdn.test/sep4"),
            {"name": "SEP_5.zip", "@microsoft.graph.downloadUrl": "https://cdn.test/sep5"},
        )
        retriever = _retriever(
            archive_config,
            {f"{API}/shares/{share_id}/driveItem": httpx.Response(200, json=listing)},
        )

        files = await retriever.list_archives(share_id)
        await retriever.client.aclose()

        assert [f.name for f in files] == ["SEP_1.zip", "SEP_2.ZIP"]
        assert files[1].download_url == f"{API}/shares/{share_id}/items/ABC/content"

    @pytest.mark.asyncio
    async def test_http_error_gives_empty_list(self, archive_config: ArchiveConfig):
        retriever = _retriever(archive_config, {})

        assert await retriever.list_archives("u!x") == []
        await retriever.client.aclose()

    @pytest.mark.asyncio
    async def test_listing_without_children(self, archive_config: ArchiveConfig):
        retriever = _retriever(
            archive_config,
            {f"{API}/shares/u!x/driveItem": httpx.Response(200, json={"name": "folder"})},
        )

        assert await retriever.list_archives("u!x") == []
        await retriever.client.aclose()


class TestDownload:
    @pytest.mark.asyncio
    async def test_follows_one_redirect(self, archive_config: ArchiveConfig):
        retriever = _retriever(
            archive_config,
            {
                "https://cdn.test/a": httpx.Response(302, headers={"location": "https://cdn2.test/b"}),
                "https://cdn2.test/b": httpx.Response(200, content=b"zipbytes"),
            },
        )

        path = await retriever.download("https://cdn.test/a", "a.zip")

        assert path is not None
        assert path.read_bytes() == b"zipbytes"
        assert retriever.requested == ["https://cdn.test/a", "https://cdn2.test/b"]

    @pytest.mark.asyncio
    async def test_second_redirect_fails(self, archive_config: ArchiveConfig):
        retriever = _retriever(
            archive_config,
            {
                "https://cdn.test/a": httpx.Response(302, headers={"location": "https://cdn.test/b"}),
                "https://cdn.test/b": httpx.Response(302, headers={"location": "https://cdn.test/c"}),
                "https://cdn.test/c": httpx.Response(200, content=b"zipbytes"),
            },
        )

        assert await retriever.download("https://cdn.test/a") is None
        assert "https://cdn.test/c" not in retriever.requested
        assert list(archive_config.scratch_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_empty_download_fails(self, archive_config: ArchiveConfig):
        retriever = _retriever(archive_config, {"https://cdn.test/a": httpx.Response(200, content=b"")})

        assert await retriever.download("https://cdn.test/a") is None
        assert list(archive_config.scratch_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_server_error_fails(self, archive_config: ArchiveConfig):
        retriever = _retriever(archive_config, {"https://cdn.test/a": httpx.Response(500)})

        assert await retriever.download("https://cdn.test/a") is None


class TestExtract:
    def test_extracts_first_payload(self, archive_config: ArchiveConfig, tmp_path: Path):
        archive = tmp_path / "download.zip"
        archive.write_bytes(
            _zip_bytes({"README.txt": b"hi", "data/SEP.csv": CSV_PAYLOAD, "other.xlsx": b"x"})
        )
        retriever = ArchiveRetriever(archive_config)

        extracted = retriever.extract(archive, "SHARADAR_SEP_2024.zip")

        assert extracted == (archive_config.scratch_dir / "SHARADAR_SEP_2024" / "data" / "SEP.csv").resolve()
        assert extracted.read_bytes() == CSV_PAYLOAD
        assert not (archive_config.scratch_dir / "SHARADAR_SEP_2024" / "other.xlsx").exists()

    def test_refuses_entries_outside_target(self, archive_config: ArchiveConfig, tmp_path: Path):
        archive = tmp_path / "evil.zip"
        archive.write_bytes(_zip_bytes({"../../escape.csv": CSV_PAYLOAD}))
        retriever = ArchiveRetriever(archive_config)

        assert retriever.extract(archive, "evil.zip") is None
        assert not (archive_config.scratch_dir.parent / "escape.csv").exists()

    def test_no_payload(self, archive_config: ArchiveConfig, tmp_path: Path):
        archive = tmp_path / "docs.zip"
        archive.write_bytes(_zip_bytes({"README.txt": b"hi"}))

        assert ArchiveRetriever(archive_config).extract(archive, "docs.zip") is None

    def test_corrupt_archive(self, archive_config: ArchiveConfig, tmp_path: Path):
        archive = tmp_path / "bad.zip"
        archive.write_bytes(b"not a zip")

        assert ArchiveRetriever(archive_config).extract(archive, "bad.zip") is None


class TestFetchLatest:
    @pytest.mark.asyncio
    async def test_end_to_end(self, archive_config: ArchiveConfig):
        share_id = create_share_id(archive_config.folder_url)
        listing = _listing(
            _child("SHARADAR_SEP_old.zip", "2024-01-01T00:00:00Z", url="https://cdn.test/old"),
            _child("SHARADAR_SEP_new.zip", "2024-02-01T00:00:00Z", url="https://cdn.test/new"),
        )
        retriever = _retriever(
            archive_config,
            {
                f"{API}/shares/{share_id}/driveItem": httpx.Response(200, json=listing),
                "https://cdn.test/new": httpx.Response(200, content=_zip_bytes({"SEP.csv": CSV_PAYLOAD})),
            },
        )
        fund = AssetDescriptor("fund", "SFP", "raw_fund_data", "transformed_fund_data")

        result = await retriever.fetch_latest([STOCK_SEP, fund])
        await retriever.client.aclose()

        assert list(result) == ["SEP"]
        assert result["SEP"].parent.name == "SHARADAR_SEP_new"
        assert result["SEP"].read_bytes() == CSV_PAYLOAD
        assert "https://cdn.test/old" not in retriever.requested
        # Downloaded archive is removed after extraction
        assert list(archive_config.scratch_dir.glob("*.zip")) == []

    @pytest.mark.asyncio
    async def test_empty_folder(self, archive_config: ArchiveConfig):
        share_id = create_share_id(archive_config.folder_url)
        retriever = _retriever(
            archive_config,
            {f"{API}/shares/{share_id}/driveItem": httpx.Response(200, json=_listing())},
        )

        assert await retriever.fetch_latest([STOCK_SEP]) == {}

    @pytest.mark.asyncio
    async def test_failed_download_omits_tag(self, archive_config: ArchiveConfig):
        share_id = create_share_id(archive_config.folder_url)
        listing = _listing(_child("SEP.zip", "2024-01-01T00:00:00Z", url="https://cdn.test/gone"))
        retriever = _retriever(
            archive_config,
            {f"{API}/shares/{share_id}/driveItem": httpx.Response(200, json=listing)},
        )

        assert await retriever.fetch_latest([STOCK_SEP]) == {}


def test_cleanup_scratch(archive_config: ArchiveConfig):
    scratch = archive_config.scratch_dir
    old_dir = scratch / "SHARADAR_SEP_old"
    old_dir.mkdir(parents=True)
    (old_dir / "SEP.csv").write_text("x")
    old_file = scratch / "download-old.zip"
    old_file.write_text("x")
    new_file = scratch / "download-new.zip"
    new_file.write_text("x")

    two_days_ago = time.time() - 2 * 86400
    for path in (old_dir / "SEP.csv", old_dir, old_file):
        os.utime(path, (two_days_ago, two_days_ago))

    removed = ArchiveRetriever(archive_config).cleanup_scratch(1)

    assert removed == 2
    assert not old_dir.exists()
    assert not old_file.exists()
    assert new_file.exists()


def test_cleanup_missing_scratch_dir(archive_config: ArchiveConfig):
    assert ArchiveRetriever(archive_config).cleanup_scratch() == 0
