from __future__ import annotations

import asyncio
import hashlib
import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

import requests

from .errors import (
    ChecksumFailedError,
    DownloadFailedError,
    FileCopyFailedError,
    InvalidManifestError,
    UnsupportedChecksumAlgorithmError,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_TIMEOUT = (10, 300)


@dataclass(frozen=True)
class DownloadEntry:
    url: str
    name: str
    algorithm: Optional[str] = None
    checksum: Optional[str] = None


def _file_name_from_url(url: str) -> str:
    name = posixpath.basename(urlparse(url).path)
    return name


def parse_download_entry(raw: Any) -> DownloadEntry:
    """Accept ``[url, "ALG:hex"]`` or ``{url, name?, algorithm?, checksum?}``."""
    algorithm: Optional[str] = None
    checksum: Optional[str] = None
    name: Optional[str] = None
    if isinstance(raw, (list, tuple)) and raw:
        url = str(raw[0] or "").strip()
        if len(raw) > 1 and raw[1]:
            pair = str(raw[1])
            if ":" not in pair:
                raise InvalidManifestError(f"checksum for {url} must look like ALGORITHM:digest")
            algorithm, checksum = pair.split(":", 1)
    elif isinstance(raw, dict):
        url = str(raw.get("url") or "").strip()
        name = raw.get("name")
        algorithm = raw.get("algorithm")
        checksum = raw.get("checksum")
    else:
        raise InvalidManifestError(f"invalid download entry: {raw!r}")

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidManifestError(f"URL {url!r} is invalid")
    name = str(name or _file_name_from_url(url)).strip()
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise InvalidManifestError(f"cannot derive a file name from {url!r}")
    if bool(algorithm) != bool(checksum):
        raise InvalidManifestError(f"checksum for {url} needs both algorithm and digest")
    return DownloadEntry(
        url=url,
        name=name,
        algorithm=str(algorithm).strip() if algorithm else None,
        checksum=str(checksum).strip() if checksum else None,
    )


def parse_download_list(raw: Optional[Iterable[Any]]) -> List[DownloadEntry]:
    if not raw:
        return []
    if isinstance(raw, (str, bytes, dict)):
        raise InvalidManifestError("download must be a list")
    return [parse_download_entry(item) for item in raw]


def compute_digest(path: Path, algorithm: str) -> str:
    try:
        digest = hashlib.new(algorithm.lower().replace("-", ""))
        if digest.digest_size == 0:
            raise ValueError("variable-length digest")
    except (ValueError, TypeError) as exc:
        raise UnsupportedChecksumAlgorithmError(
            f"Unsupported checksum hash algorithm: {algorithm}"
        ) from exc
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def validate_checksum(path: Path, algorithm: Optional[str], checksum: Optional[str]) -> None:
    if not algorithm or not checksum:
        return
    actual = compute_digest(path, algorithm)
    if actual.lower() != checksum.strip().lower():
        raise ChecksumFailedError(f"Checksum mismatch for {Path(path).name}", file_name=str(path))


class Downloader:
    """Streams remote files into a directory with ``requests``."""

    def __init__(self, session: Optional[requests.Session] = None, timeout=DEFAULT_TIMEOUT) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout

    def fetch(self, entry: DownloadEntry, directory: Path) -> Path:
        target = Path(directory) / entry.name
        logger.debug("downloading %s to %s", entry.url, target)
        try:
            response = self._session.get(entry.url, stream=True, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DownloadFailedError(f"download of {entry.url} failed: {exc}") from exc
        try:
            with response, target.open("wb") as fh:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        fh.write(chunk)
        except requests.RequestException as exc:
            raise DownloadFailedError(f"download of {entry.url} interrupted: {exc}") from exc
        except OSError as exc:
            raise FileCopyFailedError(f"unable to write {target}: {exc}") from exc
        return target

    async def download(self, entry: DownloadEntry, directory: Path) -> Path:
        """Fetch ``entry`` into ``directory`` and verify its checksum if declared."""
        path = await asyncio.to_thread(self.fetch, entry, directory)
        await asyncio.to_thread(validate_checksum, path, entry.algorithm, entry.checksum)
        return path
