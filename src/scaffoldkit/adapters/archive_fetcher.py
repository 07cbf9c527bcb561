"""HTTP archive fetcher for tarball and zip template sources."""

from __future__ import annotations

import shutil
import tarfile
import tempfile
import zipfile
from pathlib import Path

import requests

from scaffoldkit.domain.boundary import BoundaryValidator
from scaffoldkit.domain.cancellation import CancellationToken
from scaffoldkit.domain.errors import CacheError, SandboxError
from scaffoldkit.ports.source_fetchers import ArchiveFetcher

CHUNK_SIZE = 64 * 1024


class RequestsArchiveFetcher(ArchiveFetcher):
    def __init__(self, session: requests.Session | None = None, *, timeout: float = 60.0) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout

    def fetch(self, url: str, destination: Path, cancel: CancellationToken) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        suffix = ".zip" if url.lower().split("?", 1)[0].endswith(".zip") else ".tar"
        handle = tempfile.NamedTemporaryFile(prefix=".archive-", suffix=suffix, dir=destination.parent, delete=False)
        archive_path = Path(handle.name)
        try:
            with handle:
                self._download(url, handle, cancel)
            extract_archive(archive_path, destination, source=url)
        finally:
            archive_path.unlink(missing_ok=True)

    def _download(self, url: str, handle, cancel: CancellationToken) -> None:
        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                if response.status_code >= 400:
                    raise CacheError(
                        f"archive download failed: {response.status_code} {response.reason}",
                        source_url=url,
                    )
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    cancel.raise_if_cancelled("archive download")
                    if chunk:
                        handle.write(chunk)
        except requests.RequestException as exc:
            raise CacheError(f"archive download failed: {exc}", source_url=url) from exc


def extract_archive(archive_path: Path, destination: Path, *, source: str = "") -> None:
    """Extract a tar or zip archive, refusing members that escape ``destination``.

    A single top-level directory (the usual shape of hosted archives) is
    unwrapped so the template root sits directly in ``destination``.
    """
    boundary = BoundaryValidator(destination)
    try:
        if zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path) as bundle:
                for name in bundle.namelist():
                    boundary.resolve(name, capability="archive.extract", allow_root=True)
                bundle.extractall(destination)
        elif tarfile.is_tarfile(archive_path):
            with tarfile.open(archive_path) as bundle:
                members = bundle.getmembers()
                for member in members:
                    boundary.resolve(member.name, capability="archive.extract", allow_root=True)
                    if member.issym() or member.islnk():
                        raise CacheError(
                            f"archive member '{member.name}' is a link; links are not extracted",
                            source_url=source,
                        )
                    if not (member.isfile() or member.isdir()):
                        raise CacheError(f"archive member '{member.name}' has unsupported type", source_url=source)
                for member in members:
                    _extract_tar_member(bundle, member, boundary)
        else:
            raise CacheError("downloaded file is not a tar or zip archive", source_url=source)
    except SandboxError as exc:
        raise CacheError(f"unsafe archive: {exc.message}", source_url=source, path=exc.path) from exc
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
        raise CacheError(f"archive extraction failed: {exc}", source_url=source) from exc
    _unwrap_single_directory(destination)


def _extract_tar_member(bundle: tarfile.TarFile, member: tarfile.TarInfo, boundary: BoundaryValidator) -> None:
    target = boundary.resolve(member.name, capability="archive.extract", allow_root=True)
    if member.isdir():
        target.mkdir(parents=True, exist_ok=True)
        return
    target.parent.mkdir(parents=True, exist_ok=True)
    source = bundle.extractfile(member)
    if source is None:
        return
    with source, target.open("wb") as sink:
        shutil.copyfileobj(source, sink)


def _unwrap_single_directory(destination: Path) -> None:
    entries = list(destination.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return
    inner = entries[0]
    holding = destination / f".unwrap-{inner.name}"
    inner.rename(holding)
    for child in holding.iterdir():
        shutil.move(str(child), str(destination / child.name))
    holding.rmdir()


__all__ = ["RequestsArchiveFetcher", "extract_archive"]
