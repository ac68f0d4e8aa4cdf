"""Archive snapshot files: naming, encryption, metadata and extraction.

Archives live in the backup directory as
``snapshot-<description>-<timestamp>.tar.gz`` (``.tar.gz.enc`` when
encrypted), each with a JSON sidecar holding the snapshot metadata.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from ..utils.fs import atomic_write, safe_json_load
from .errors import CapacityError, NotFound, StorageError, ValidationError
from .models import Snapshot
from .storage import CancelCheck, VersionedStorage

logger = logging.getLogger(__name__)

CAPACITY_FACTOR = 1.5
FILE_PREFIX = "snapshot-"
PLAIN_SUFFIX = ".tar.gz"
ENCRYPTED_SUFFIX = ".tar.gz.enc"
METADATA_SUFFIX = ".json"


class EnvKeySource:
    """Reads the archive encryption key from an environment variable.

    The key itself is never logged or persisted; only the variable name is.
    """

    def __init__(self, env_var: str):
        self.env_var = env_var

    def get(self) -> bytes | None:
        value = os.environ.get(self.env_var, "").strip()
        return value.encode() if value else None


@dataclass
class ArchiveRecord:
    """An archive file found on disk."""
    name: str
    path: Path
    encrypted: bool
    modified_at: datetime
    metadata: Snapshot | None = None


class ArchiveStore:
    """Manages archive snapshots in the backup directory."""

    def __init__(self, directory: Path, *, prefix: str = "before-", key_source: EnvKeySource | None = None):
        self.directory = Path(directory)
        self.prefix = prefix
        self.key_source = key_source

    def file_name(self, name: str, encrypted: bool) -> str:
        description = name[len(self.prefix):] if name.startswith(self.prefix) else name
        return FILE_PREFIX + description + (ENCRYPTED_SUFFIX if encrypted else PLAIN_SUFFIX)

    def snapshot_name(self, file_name: str) -> str | None:
        """Map an archive file name back to its snapshot name."""
        if not file_name.startswith(FILE_PREFIX):
            return None
        for suffix in (ENCRYPTED_SUFFIX, PLAIN_SUFFIX):
            if file_name.endswith(suffix):
                description = file_name[len(FILE_PREFIX):-len(suffix)]
                return self.prefix + description if description else None
        return None

    def _fernet(self, required: bool) -> Fernet | None:
        key = self.key_source.get() if self.key_source else None
        if key is None:
            if required:
                env_var = self.key_source.env_var if self.key_source else "the key variable"
                raise ValidationError(
                    "encryption_key",
                    "archive must be encrypted but no key is configured",
                    operation="create_archive",
                    hint=f"set {env_var} to a Fernet key",
                )
            return None
        try:
            return Fernet(key)
        except ValueError as e:
            raise ValidationError(
                "encryption_key",
                "configured key is not a valid Fernet key",
                operation="create_archive",
                hint="generate one with cryptography.fernet.Fernet.generate_key()",
            ) from e

    def will_encrypt(self, required: bool) -> bool:
        return self._fernet(required) is not None

    def ensure_capacity(self, estimated_size: int) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        try:
            free = shutil.disk_usage(self.directory).free
        except OSError as e:
            raise StorageError(str(e), operation="capacity check", resource=str(self.directory)) from e
        required = int(estimated_size * CAPACITY_FACTOR)
        if free < required:
            raise CapacityError(
                f"need {required} bytes free, {free} available",
                operation="create_archive",
                resource=str(self.directory),
                hint="free disk space or use a marker snapshot instead",
            )

    def write(
        self,
        name: str,
        repo: VersionedStorage,
        *,
        encryption_required: bool,
        cancel: CancelCheck | None = None,
    ) -> tuple[Path, int, bool]:
        """Export the repository into a new archive.

        Returns:
            (archive path, size in bytes, whether it is encrypted)
        """
        fernet = self._fernet(encryption_required)
        encrypted = fernet is not None
        final_path = self.directory / self.file_name(name, encrypted)
        if final_path.exists():
            raise StorageError(
                "archive already exists",
                operation="create_archive",
                resource=str(final_path),
            )
        # Owner-only plaintext tarball; removed on every exit path.
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.directory,
            prefix=f".{self.file_name(name, False)}.",
            suffix=".partial",
        )
        os.close(fd)
        partial = Path(tmp_name)

        try:
            size = repo.create_archive(partial, cancel)
            if fernet is not None:
                token = fernet.encrypt(partial.read_bytes())
                atomic_write(final_path, token, mode="wb")
                size = final_path.stat().st_size
            else:
                os.replace(partial, final_path)
        except OSError as e:
            raise StorageError(
                str(e),
                operation="create_archive",
                resource=str(final_path),
                hint="check free space and permissions in the backup directory",
            ) from e
        finally:
            partial.unlink(missing_ok=True)

        logger.info("wrote archive %s (%d bytes, encrypted=%s)", final_path.name, size, encrypted)
        return final_path, size, encrypted

    def write_metadata(self, snapshot: Snapshot) -> None:
        if snapshot.archive_path is None:
            return
        sidecar = snapshot.archive_path.with_name(snapshot.archive_path.name + METADATA_SUFFIX)
        try:
            atomic_write(sidecar, json.dumps(snapshot.to_dict(), indent=2), mode="w")
        except OSError as e:
            raise StorageError(str(e), operation="write archive metadata", resource=str(sidecar)) from e

    def list(self) -> list[ArchiveRecord]:
        """List archives, newest first."""
        records: list[ArchiveRecord] = []
        if not self.directory.exists():
            return records

        try:
            entries = list(self.directory.iterdir())
        except OSError as e:
            raise StorageError(str(e), operation="list archives", resource=str(self.directory)) from e

        for entry in entries:
            if not entry.is_file():
                continue
            name = self.snapshot_name(entry.name)
            if name is None:
                continue
            records.append(self._record(name, entry))

        records.sort(key=lambda r: r.modified_at, reverse=True)
        return records

    def _record(self, name: str, path: Path) -> ArchiveRecord:
        modified_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        metadata = None
        data = safe_json_load(path.with_name(path.name + METADATA_SUFFIX), {})
        if isinstance(data, dict) and data.get("name") == name:
            try:
                metadata = Snapshot.from_dict(data, archive_path=path)
            except ValueError:
                metadata = None
        return ArchiveRecord(
            name=name,
            path=path,
            encrypted=path.name.endswith(ENCRYPTED_SUFFIX),
            modified_at=modified_at,
            metadata=metadata,
        )

    def find(self, name: str) -> ArchiveRecord | None:
        for encrypted in (True, False):
            path = self.directory / self.file_name(name, encrypted)
            if path.is_file():
                return self._record(name, path)
        return None

    def delete(self, name: str) -> None:
        record = self.find(name)
        if record is None:
            raise NotFound(
                f"archive {name} not found",
                operation="delete archive",
                resource=str(self.directory),
            )
        try:
            record.path.unlink()
            record.path.with_name(record.path.name + METADATA_SUFFIX).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(str(e), operation="delete archive", resource=str(record.path)) from e

    def extract(self, name: str, destination: Path) -> int:
        """Unpack an archive into ``destination``.

        Args:
            name: Archive snapshot name
            destination: Directory to write files into

        Returns:
            Number of files written
        """
        record = self.find(name)
        if record is None:
            raise NotFound(
                f"archive {name} not found",
                operation="unpack",
                resource=str(self.directory),
                hint="list available archives with `safepoint list --kind archive`",
            )

        destination = Path(destination)
        with tempfile.TemporaryDirectory() as tmp_dir:
            tmp_path = Path(tmp_dir)
            tarball = record.path
            if record.encrypted:
                fernet = self._fernet(required=True)
                if fernet is None:
                    raise ValidationError("encryption_key", "no key configured", operation="unpack")
                try:
                    plain = fernet.decrypt(record.path.read_bytes())
                except InvalidToken as e:
                    raise ValidationError(
                        "encryption_key",
                        "key does not decrypt this archive",
                        operation="unpack",
                    ) from e
                tarball = tmp_path / "archive.tar.gz"
                tarball.write_bytes(plain)

            extract_root = tmp_path / "files"
            try:
                with tarfile.open(tarball, "r:gz") as tar:
                    tar.extractall(extract_root, filter="data")
            except (OSError, tarfile.TarError) as e:
                raise StorageError(str(e), operation="unpack", resource=str(record.path)) from e

            file_count = 0
            for root, _, files in os.walk(extract_root):
                for file in files:
                    src = Path(root) / file
                    dst = destination / src.relative_to(extract_root)
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, dst)
                    file_count += 1

        return file_count
