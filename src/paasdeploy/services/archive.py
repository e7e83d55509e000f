"""Archive helpers for deployment snapshots."""

import io
import json
import os
import shutil
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from paasdeploy.errors import DeployError


class ArchiveService:
    """Creates tar.gz snapshots and extracts them without escaping the target."""

    METADATA_MEMBER = "snapshot.json"

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def create_tar(
        self,
        base_dir: str,
        relative_paths: Sequence[str],
        archive_path: str,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        directory = os.path.dirname(archive_path) or "."
        fd, temp_path = tempfile.mkstemp(prefix=".snapshot-", suffix=".tar.gz", dir=directory)
        os.close(fd)

        try:
            with tarfile.open(temp_path, "w:gz", dereference=True) as tar:
                for relative_path in relative_paths:
                    tar.add(os.path.join(base_dir, relative_path), arcname=relative_path)
                if metadata is not None:
                    payload = json.dumps(metadata, indent=2, sort_keys=True).encode("utf-8")
                    info = tarfile.TarInfo(self.METADATA_MEMBER)
                    info.size = len(payload)
                    info.mtime = int(time.time())
                    info.mode = 0o600
                    tar.addfile(info, io.BytesIO(payload))
            os.replace(temp_path, archive_path)
        except (OSError, tarfile.TarError) as exc:
            raise DeployError(f"Could not create archive {archive_path}: {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    def read_json_member(self, archive_path: str, member_name: str = METADATA_MEMBER) -> Dict[str, Any]:
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                try:
                    member = tar.getmember(member_name)
                except KeyError:
                    return {}
                file_obj = tar.extractfile(member)
                if file_obj is None:
                    return {}
                data = json.loads(file_obj.read().decode("utf-8"))
        except (OSError, tarfile.TarError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DeployError(f"Invalid snapshot archive {archive_path}: {exc}") from exc

        return data if isinstance(data, dict) else {}

    def safe_extract_tar(
        self,
        archive_path: str,
        destination_dir: str,
        skip: Iterable[str] = (METADATA_MEMBER,),
    ):
        base = Path(destination_dir).resolve()
        skipped = set(skip)

        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                members = [member for member in tar.getmembers() if member.name not in skipped]

                for member in members:
                    normalized_name = member.name.replace("\\", "/")
                    target_path = (base / normalized_name).resolve()

                    if normalized_name.startswith("/") or not self.is_within_dir(base, target_path):
                        raise DeployError(
                            f"Unsafe archive entry detected: `{member.name}`. "
                            "Extraction aborted to prevent path traversal."
                        )
                    if not (member.isfile() or member.isdir()):
                        raise DeployError(
                            f"Unsafe archive entry detected: `{member.name}` is not a regular file."
                        )

                for member in members:
                    target_path = (base / member.name.replace("\\", "/")).resolve()

                    if member.isdir():
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    if source is None:
                        continue
                    with source, open(target_path, "wb") as dst:
                        shutil.copyfileobj(source, dst)
                    os.chmod(target_path, (member.mode & 0o777) or 0o600)
        except tarfile.TarError as exc:
            raise DeployError(f"Invalid snapshot archive: {archive_path}") from exc
