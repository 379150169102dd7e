"""Directory-backed stages for staging, output and key material.

A stage is a named directory under ``settings.stages_dir``. References look
like ``@outbound/orders`` (the ``@`` is optional): the first segment names
the stage, the rest is a path inside it. A reference may point at a
directory (staging/output locations) or at a single file (recipient keys).

Staging areas are assumed to have a single writer per export run.
"""

import shutil
import uuid
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath

import structlog

from pgp_export.config import settings
from pgp_export.errors import AccessError, DownloadError, UploadError

logger = structlog.get_logger()


def _parse_reference(reference: str) -> tuple[str, str]:
    ref = reference.strip()
    if ref.startswith("@"):
        ref = ref[1:]
    parts = [p for p in PurePosixPath(ref).parts if p not in ("", "/")]
    if not parts:
        raise ValueError(f"Empty stage reference: {reference!r}")
    if any(p == ".." for p in parts):
        raise ValueError(f"Stage reference must not contain '..': {reference!r}")
    return parts[0], "/".join(parts[1:])


class Stage:
    """
    A location inside a named stage.

    Usage:
        stage = Stage("@outbound/orders")
        stage.upload(local_file)
        stage.list_files()
    """

    def __init__(self, reference: str, root: Path | None = None) -> None:
        self.reference = reference
        self.name, self.subpath = _parse_reference(reference)
        self._root = root

    @property
    def root(self) -> Path:
        """Stages root (settings are read on each access to support testing)."""
        return self._root or settings.stages_dir

    @property
    def base_dir(self) -> Path:
        """Directory of the named stage itself."""
        return self.root / self.name

    @property
    def path(self) -> Path:
        return self.base_dir / self.subpath if self.subpath else self.base_dir

    def __str__(self) -> str:
        return f"@{self.name}/{self.subpath}" if self.subpath else f"@{self.name}"

    def __repr__(self) -> str:
        return f"Stage({str(self)!r})"

    def create(self) -> "Stage":
        """Create the stage location (and the stage itself) if missing."""
        self.path.mkdir(parents=True, exist_ok=True)
        return self

    def path_for(self, name: str) -> Path:
        """Local path of a file at this location."""
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Invalid file name: {name!r}")
        return self.path / name

    def list_files(self, pattern: str | None = None) -> list[Path]:
        """Files at this location (a file reference lists itself), sorted by name."""
        path = self.path
        if path.is_file():
            files = [path]
        elif path.is_dir():
            files = [p for p in path.iterdir() if p.is_file()]
        else:
            files = []
        if pattern:
            files = [p for p in files if fnmatch(p.name, pattern)]
        return sorted(files, key=lambda p: p.name)

    def remove(self, pattern: str | None = None) -> int:
        """Delete files at this location. Returns the number removed."""
        removed = 0
        for file_path in self.list_files(pattern):
            file_path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.debug("stage_files_removed", stage=str(self), count=removed)
        return removed

    def check_access(self, writable: bool = True) -> None:
        """
        Verify the stage exists and can be listed (and written to).

        Raises:
            AccessError: If the stage is missing or not usable
        """
        if not self.base_dir.is_dir():
            raise AccessError(
                f"Stage {self.name} does not exist or is not authorized",
                details={"stage": str(self)},
            )
        try:
            self.list_files()
            if writable:
                self.path.mkdir(parents=True, exist_ok=True)
                marker = self.path / f".access_check_{uuid.uuid4().hex}"
                marker.write_bytes(b"")
                marker.unlink()
        except OSError as e:
            raise AccessError(
                f"Stage {self} is not accessible: {e}",
                details={"stage": str(self), "writable": writable},
            ) from e

    def download(self, local_dir: Path, name: str | None = None) -> list[Path]:
        """
        Copy files from this location into a local directory.

        Args:
            local_dir: Destination directory (created if missing)
            name: File name (or glob) at this location; all files when omitted

        Raises:
            DownloadError: If nothing matched or a copy failed
        """
        files = self.list_files(name)
        if not files:
            raise DownloadError(
                f"No files found at {self}" + (f" matching {name}" if name else ""),
                details={"stage": str(self), "name": name},
            )

        local_dir.mkdir(parents=True, exist_ok=True)
        downloaded = []
        for source in files:
            target = local_dir / source.name
            try:
                shutil.copyfile(source, target)
            except OSError as e:
                raise DownloadError(
                    f"Failed to download {source.name} from {self}: {e}",
                    details={"stage": str(self), "file": source.name},
                ) from e
            downloaded.append(target)

        logger.debug("stage_download", stage=str(self), files=len(downloaded))
        return downloaded

    def upload(self, local_file: Path, name: str | None = None, overwrite: bool = True) -> Path:
        """
        Copy a local file to this location.

        Raises:
            UploadError: If the file is missing, exists (without overwrite) or
                the copy failed
        """
        target = self.path_for(name or local_file.name)
        if not local_file.is_file():
            raise UploadError(
                f"Local file not found: {local_file}",
                details={"stage": str(self), "file": str(local_file)},
            )
        if target.exists() and not overwrite:
            raise UploadError(
                f"File {target.name} already exists at {self}",
                details={"stage": str(self), "file": target.name},
            )

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Copy under a temporary name so readers never see partial files
            partial = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
            shutil.copyfile(local_file, partial)
            partial.replace(target)
        except OSError as e:
            raise UploadError(
                f"Failed to upload {local_file.name} to {self}: {e}",
                details={"stage": str(self), "file": target.name},
            ) from e

        logger.debug("stage_upload", stage=str(self), file=target.name, size_bytes=target.stat().st_size)
        return target
