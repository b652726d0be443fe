"""Archive helpers for cache snapshots."""

import os
import shutil
import zipfile
import zlib
from pathlib import Path
from typing import Iterable

from imagereleaser.errors import ReleaseError


class ArchiveService:
    """Packs cache directories into zips and extracts them safely."""

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def create_zip(self, root_dir: str, relative_paths: Iterable[str], zip_path: str) -> int:
        """Zip every file under ``relative_paths``. Returns the number of files written."""
        root = Path(root_dir)
        count = 0
        # pre-1980 mtimes are clamped instead of raising
        with zipfile.ZipFile(
            zip_path,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            strict_timestamps=False,
        ) as zip_ref:
            for relative in relative_paths:
                base = root / relative
                if not base.exists():
                    continue
                candidates = [base] if base.is_file() else sorted(base.rglob("*"))
                for path in candidates:
                    if path.is_symlink() or not path.is_file():
                        continue
                    zip_ref.write(path, path.relative_to(root).as_posix())
                    count += 1
        return count

    def safe_extract_zip(self, zip_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with zipfile.ZipFile(zip_path, "r") as zip_ref:
                for member in zip_ref.infolist():
                    normalized_name = member.filename.replace("\\", "/")
                    target_path = (base / normalized_name).resolve()

                    if not self.is_within_dir(base, target_path):
                        raise ReleaseError(
                            f"Unsafe ZIP entry detected: `{member.filename}`. "
                            "Archive extraction aborted to prevent path traversal."
                        )

                    file_type = (member.external_attr >> 16) & 0o170000
                    if file_type == 0o120000:
                        raise ReleaseError(
                            f"Unsafe ZIP entry detected: `{member.filename}` is a symbolic link."
                        )

                for member in zip_ref.infolist():
                    normalized_name = member.filename.replace("\\", "/")
                    target_path = (base / normalized_name).resolve()

                    if member.is_dir() or normalized_name.endswith("/"):
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    with zip_ref.open(member, "r") as src, open(target_path, "wb") as dst:
                        shutil.copyfileobj(src, dst)
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            raise ReleaseError(f"Invalid ZIP archive: {zip_path}: {exc}") from exc
