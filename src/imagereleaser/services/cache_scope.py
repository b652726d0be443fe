"""Build cache scoping per branch or tag."""

import os
import shutil
import tempfile
from typing import List, Optional, Sequence

from imagereleaser.models import CachePolicy, CacheScope, ReleaseRef
from imagereleaser.services.archive import ArchiveService

DEFAULT_CACHE_PATHS = (".cargo/registry/index", ".cargo/registry/cache")
TAG_SCOPE_PREFIX = "tag@"


class DirectoryCacheBackend:
    """Stores one zip snapshot per scope key under a shared directory.

    Writes go through a temporary file and ``os.replace``. Concurrent writers on
    the same key are last-writer-wins and readers never see a partial archive.
    """

    def __init__(self, root: str, logger):
        self.root = root
        self.logger = logger

    def archive_path(self, key: str) -> str:
        return os.path.join(self.root, f"{key}.zip")

    def read(self, key: str) -> Optional[str]:
        path = self.archive_path(key)
        if not os.path.isfile(path):
            return None
        return path

    def write(self, key: str, archive_path: str):
        os.makedirs(self.root, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=".cache-", suffix=".zip", dir=self.root)
        try:
            with os.fdopen(fd, "wb") as dst, open(archive_path, "rb") as src:
                shutil.copyfileobj(src, dst)
            os.replace(temp_path, self.archive_path(key))
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass


class CacheSession:
    """One invocation's read/write session against a cache scope."""

    def __init__(self, scope: CacheScope, workspace: str, paths: Sequence[str], restored: bool):
        self.scope = scope
        self.workspace = workspace
        self.paths = list(paths)
        self.restored = restored
        self.succeeded = False
        self.released = False

    @property
    def cold(self) -> bool:
        return not self.restored

    @property
    def writable(self) -> bool:
        return self.scope.policy == CachePolicy.READ_WRITE

    def mark_succeeded(self):
        self.succeeded = True


class CacheScopeManager:
    """Derives cache scopes from refs and manages sessions against the backend."""

    def __init__(
        self,
        backend,
        logger,
        archive_service: Optional[ArchiveService] = None,
        cache_paths: Sequence[str] = DEFAULT_CACHE_PATHS,
    ):
        self.backend = backend
        self.logger = logger
        self.archive_service = archive_service or ArchiveService()
        self.cache_paths: List[str] = list(cache_paths)

    def scope_for(self, ref: ReleaseRef, policy: CachePolicy = CachePolicy.READ_WRITE) -> CacheScope:
        if ref.is_tagged:
            # branch slugs never contain "@"
            key = f"{TAG_SCOPE_PREFIX}{ref.tag_value}"
        else:
            key = ref.branch_slug
        return CacheScope(key=key, policy=policy)

    def acquire(
        self,
        scope: CacheScope,
        workspace: str,
        mode: Optional[CachePolicy] = None,
    ) -> CacheSession:
        if mode is not None and mode != scope.policy:
            scope = CacheScope(key=scope.key, policy=mode)

        restored = False
        archive_path = None
        try:
            archive_path = self.backend.read(scope.key)
            if archive_path:
                self.archive_service.safe_extract_zip(archive_path, workspace)
                restored = True
                self.logger.info("Restored build cache for scope '%s'.", scope.key)
            else:
                self.logger.info("No build cache for scope '%s'. Starting cold.", scope.key)
        except Exception as exc:
            self.logger.warning(
                "Build cache for scope '%s' is unavailable, continuing with a cold cache: %s",
                scope.key,
                exc,
            )
            if archive_path:
                self._discard_partial_restore(workspace)

        return CacheSession(scope=scope, workspace=workspace, paths=self.cache_paths, restored=restored)

    def _discard_partial_restore(self, workspace: str):
        for relative in self.cache_paths:
            path = os.path.join(workspace, relative)
            try:
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                elif os.path.lexists(path):
                    os.remove(path)
            except OSError as exc:
                self.logger.warning("Could not clear partially restored cache at %s: %s", path, exc)

    def release(self, session: CacheSession):
        if session.released:
            return
        session.released = True

        if not session.writable:
            self.logger.debug("Cache scope '%s' is read-only. Nothing to write.", session.scope.key)
            return
        if not session.succeeded:
            self.logger.info(
                "Skipping cache write-back for scope '%s' because the build did not succeed.",
                session.scope.key,
            )
            return

        fd, temp_path = tempfile.mkstemp(prefix="cache-snapshot-", suffix=".zip")
        os.close(fd)
        try:
            count = self.archive_service.create_zip(session.workspace, session.paths, temp_path)
            if count == 0:
                self.logger.debug("No cache files found under %s.", ", ".join(session.paths))
                return
            self.backend.write(session.scope.key, temp_path)
            self.logger.info("Saved %s cached files for scope '%s'.", count, session.scope.key)
        except Exception as exc:
            self.logger.warning("Could not save build cache for scope '%s': %s", session.scope.key, exc)
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
