import zipfile

import pytest

from imagereleaser.errors import ReleaseError
from imagereleaser.services.archive import ArchiveService


def test_archive_service_blocks_path_traversal(tmp_path):
    service = ArchiveService()

    zip_path = tmp_path / "malicious.zip"
    with zipfile.ZipFile(zip_path, "w") as zip_file:
        zip_file.writestr("../escape.txt", "malicious")

    destination = tmp_path / "extract"
    destination.mkdir()

    with pytest.raises(ReleaseError):
        service.safe_extract_zip(str(zip_path), str(destination))

    assert not (tmp_path / "escape.txt").exists()


def test_create_zip_collects_only_requested_paths(tmp_path):
    service = ArchiveService()
    root = tmp_path / "ws"
    (root / ".cargo" / "registry" / "index").mkdir(parents=True)
    (root / ".cargo" / "registry" / "index" / "config.json").write_text("{}", encoding="utf-8")
    (root / "target").mkdir()
    (root / "target" / "app").write_text("binary", encoding="utf-8")

    zip_path = tmp_path / "snapshot.zip"
    count = service.create_zip(str(root), [".cargo/registry/index", ".cargo/registry/cache"], str(zip_path))

    assert count == 1
    with zipfile.ZipFile(zip_path) as zip_file:
        assert zip_file.namelist() == [".cargo/registry/index/config.json"]

    destination = tmp_path / "restore"
    destination.mkdir()
    service.safe_extract_zip(str(zip_path), str(destination))
    assert (destination / ".cargo" / "registry" / "index" / "config.json").read_text(encoding="utf-8") == "{}"
