"""Shared-folder archive retrieval.

Resolves a shared-folder link to its children, picks the newest archive
whose name carries an asset's tag, downloads it and extracts the first
spreadsheet/CSV payload into the scratch directory.

Every recoverable failure degrades to "nothing retrieved"; callers treat an
empty mapping as "nothing to do".
"""

from __future__ import annotations

import base64
import logging
import os
import shutil
import tempfile
import time
import zipfile
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import httpx

from marketetl.config import ArchiveConfig
from marketetl.pipeline.assets import AssetDescriptor
from marketetl.pipeline.types import ArchiveFileDescriptor

logger = logging.getLogger(__name__)

DOWNLOAD_URL_KEY = "@microsoft.graph.downloadUrl"
CHUNK_SIZE = 64 * 1024
PROGRESS_EVERY_BYTES = 10 * 1024 * 1024
MB = 1024 * 1024


def create_share_id(sharing_link: str) -> str:
    """Encode a sharing link as a share identifier ("u!" + URL-safe base64)."""
    encoded = base64.b64encode(sharing_link.encode("utf-8")).decode("ascii")
    return "u!" + encoded.replace("/", "_").replace("+", "-")


def decode_share_id(share_id: str) -> str:
    """Inverse of create_share_id."""
    if not share_id.startswith("u!"):
        raise ValueError(f"Not a share identifier: {share_id}")
    body = share_id[2:].replace("_", "/").replace("-", "+")
    body += "=" * (-len(body) % 4)
    return base64.b64decode(body).decode("utf-8")


def parse_last_modified(value: str) -> datetime:
    """Parse a listing timestamp such as 2024-03-01T12:30:00.123Z (naive UTC)."""
    text = value.strip()
    if "T" in text:
        text = text.split("Z", 1)[0]
    return datetime.fromisoformat(text).replace(tzinfo=None)


def select_latest(
    files: Iterable[ArchiveFileDescriptor], tag: str
) -> Optional[ArchiveFileDescriptor]:
    """Most recently modified file whose name contains tag (case-insensitive)."""
    needle = tag.lower()
    candidates = [f for f in files if needle in f.name.lower()]
    if not candidates:
        return None
    return max(candidates, key=lambda f: f.last_modified)


class ArchiveRetriever:
    """Download and unpack the newest archive per asset from a shared folder.

    Usage:
        async with ArchiveRetriever(config.archive) as retriever:
            files = await retriever.fetch_latest([STOCK_SEP])
    """

    def __init__(
        self,
        config: ArchiveConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.scratch_dir = Path(config.scratch_dir)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.config.read_timeout, connect=self.config.connect_timeout
                ),
                headers={"User-Agent": self.config.user_agent},
                follow_redirects=False,
            )
        return self._client

    async def __aenter__(self) -> ArchiveRetriever:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_latest(self, assets: Iterable[AssetDescriptor]) -> dict[str, Path]:
        """Retrieve the newest archive for each asset.

        Returns:
            Mapping of asset tag -> extracted payload path. Tags whose archive
            could not be found, downloaded or extracted are absent; the
            mapping is empty when nothing usable was found.
        """
        result: dict[str, Path] = {}
        try:
            logger.info(f"Starting download from shared folder: {self.config.folder_url}")
            self.scratch_dir.mkdir(parents=True, exist_ok=True)

            share_id = create_share_id(self.config.folder_url)
            logger.info(f"Generated share ID: {share_id}")

            files = await self.list_archives(share_id)
            if not files:
                logger.warning("No files found in shared folder")
                return {}

            logger.info(f"Found {len(files)} archives in shared folder")

            for asset in assets:
                latest = select_latest(files, asset.tag)
                if latest is None:
                    logger.warning(f"No {asset.tag} files found in the folder")
                    continue

                logger.info(
                    f"Found {asset.tag} file: {latest.name}, last modified: {latest.last_modified}"
                )
                extracted = await self.retrieve(latest)
                if extracted is not None:
                    result[asset.tag] = extracted
                    logger.info(f"Successfully extracted {asset.tag} file to: {extracted}")

        except Exception as e:
            logger.error(f"Error during file download and extraction: {e}", exc_info=True)
            return {}

        return result

    async def list_archives(self, share_id: str) -> list[ArchiveFileDescriptor]:
        """List archive children of a shared folder.

        Entries without a timestamp or a download reference are skipped.
        """
        api_url = f"{self.config.api_base_url}/shares/{share_id}/driveItem"
        logger.info(f"Querying folder listing: {api_url}")

        try:
            response = await self.client.get(
                api_url,
                params={"$expand": "children"},
                timeout=httpx.Timeout(self.config.connect_timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"API Error: Status {e.response.status_code}, Body: {e.response.text[:500]}"
            )
            return []
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error getting files from shared folder: {e}")
            return []

        children = payload.get("children") if isinstance(payload, dict) else None
        if not isinstance(children, list):
            logger.warning("API response did not contain children listing")
            return []

        return [f for f in (self._describe(item, share_id) for item in children) if f]

    def _describe(self, item: Any, share_id: str) -> Optional[ArchiveFileDescriptor]:
        if not isinstance(item, dict):
            return None
        name = str(item.get("name") or "").strip()
        if not name or not name.lower().endswith(self.config.archive_extension.lower()):
            return None

        last_modified = str(item.get("lastModifiedDateTime") or "").strip()
        download_url = str(item.get(DOWNLOAD_URL_KEY) or "").strip()
        if not download_url:
            item_id = str(item.get("id") or "").strip()
            if item_id:
                download_url = (
                    f"{self.config.api_base_url}/shares/{share_id}/items/{item_id}/content"
                )

        if not last_modified or not download_url:
            logger.warning(f"Missing properties for file: {name}")
            return None

        try:
            modified = parse_last_modified(last_modified)
        except ValueError as e:
            logger.warning(f"Error parsing metadata for file {name}: {e}")
            return None

        logger.info(f"Found file: {name}, last modified: {modified}")
        return ArchiveFileDescriptor(name=name, last_modified=modified, download_url=download_url)

    async def retrieve(self, file: ArchiveFileDescriptor) -> Optional[Path]:
        """Download one archive and extract its payload; the archive is removed."""
        archive = await self.download(file.download_url, file.name)
        if archive is None:
            return None
        try:
            return self.extract(archive, file.name)
        finally:
            archive.unlink(missing_ok=True)

    async def download(
        self,
        url: str,
        name: str = "archive",
        redirects_left: Optional[int] = None,
    ) -> Optional[Path]:
        """Stream a download into the scratch directory.

        A redirect is followed by calling download() again with the new
        location, at most ``max_redirects`` times. Any other non-200 status,
        a transport error or an empty body is a failure (None).
        """
        if redirects_left is None:
            redirects_left = self.config.max_redirects

        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.scratch_dir, prefix="download-", suffix=self.config.archive_extension
        )
        os.close(fd)
        target = Path(tmp_name)

        logger.info(f"Downloading file: {name} from URL: {url}")
        redirect_to: Optional[str] = None
        try:
            async with self.client.stream("GET", url) as response:
                if response.status_code != httpx.codes.OK:
                    logger.error(f"Download failed with response code: {response.status_code}")
                    location = response.headers.get("location")
                    if response.is_redirect and location and redirects_left > 0:
                        redirect_to = str(response.url.join(location))
                    else:
                        target.unlink(missing_ok=True)
                        return None
                else:
                    await self._write_stream(response, target)
        except (httpx.HTTPError, OSError) as e:
            logger.error(f"Error downloading file: {name}: {e}")
            target.unlink(missing_ok=True)
            return None

        if redirect_to is not None:
            target.unlink(missing_ok=True)
            logger.info(f"Following redirect to: {redirect_to}")
            return await self.download(redirect_to, name, redirects_left - 1)

        size = target.stat().st_size
        if size == 0:
            logger.error("Downloaded file is empty")
            target.unlink(missing_ok=True)
            return None

        logger.info(f"Successfully downloaded {size // MB} MB to: {target}")
        return target

    async def _write_stream(self, response: httpx.Response, target: Path) -> None:
        length = response.headers.get("content-length")
        size_mb = int(length) // MB if length and length.isdigit() else "unknown"
        logger.info(f"Starting download of {size_mb} MB file")

        start = time.monotonic()
        total = 0
        next_report = PROGRESS_EVERY_BYTES
        with open(target, "wb") as output:
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                output.write(chunk)
                total += len(chunk)
                if total >= next_report:
                    elapsed = int(time.monotonic() - start)
                    logger.info(f"Downloaded {total // MB} MB in {elapsed} seconds")
                    next_report += PROGRESS_EVERY_BYTES

        logger.info(
            f"Completed download: {total // MB} MB in {int(time.monotonic() - start)} seconds"
        )

    def extract(self, archive: Path, original_name: str) -> Optional[Path]:
        """Extract the first spreadsheet/CSV entry of an archive.

        The payload lands in ``{scratch}/{archive base name}/``.
        """
        target_dir = self.scratch_dir / Path(original_name).stem
        target_dir.mkdir(parents=True, exist_ok=True)
        root = target_dir.resolve()
        extensions = tuple(ext.lower() for ext in self.config.payload_extensions)

        logger.info(f"Extracting zip file to: {target_dir}")
        try:
            with zipfile.ZipFile(archive) as zf:
                for info in zf.infolist():
                    if info.is_dir() or not info.filename.lower().endswith(extensions):
                        continue

                    output = (target_dir / info.filename).resolve()
                    if root not in output.parents:
                        logger.warning(f"Skipping entry outside extraction dir: {info.filename}")
                        continue

                    output.parent.mkdir(parents=True, exist_ok=True)
                    start = time.monotonic()
                    with zf.open(info) as src, open(output, "wb") as dst:
                        shutil.copyfileobj(src, dst, MB)
                    logger.info(
                        f"Completed extraction: {info.file_size // MB} MB in "
                        f"{int(time.monotonic() - start)} seconds"
                    )
                    logger.info(f"Extracted file: {output}")
                    return output

        except (zipfile.BadZipFile, OSError) as e:
            logger.error(f"Error extracting zip file {archive}: {e}")
            return None

        logger.warning("No Excel or CSV file found in the zip archive")
        return None

    def cleanup_scratch(self, older_than_days: Optional[int] = None) -> int:
        """Delete scratch files and subtrees older than N days.

        Returns:
            Number of files/directories removed
        """
        days = self.config.cleanup_older_than_days if older_than_days is None else older_than_days
        logger.info(f"Cleaning up temporary files older than {days} days")

        if not self.scratch_dir.exists():
            return 0

        cutoff = time.time() - days * 86400
        removed = 0
        # Parents before children, so a removed subtree is skipped below
        for path in sorted(self.scratch_dir.rglob("*"), key=lambda p: len(p.parts)):
            try:
                if not path.exists() or path.stat().st_mtime >= cutoff:
                    continue
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to delete path: {path}: {e}")

        logger.info(f"Temporary file cleanup completed, removed {removed} entries")
        return removed
