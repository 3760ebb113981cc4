"""
Filesystem adapter — generated artifacts on disk.

Unit files, proxy entries, the artifact copies under the state
directory and project sources are written and removed here, so each
change has a receipt and honours dry-run. Writes go through a temp file
and a rename; removing something that is already gone succeeds.

``copy_tree`` and ``unpack`` replace ``path`` as a whole: the new tree
is built next to it and swapped in, so files deleted from the source
do not linger in the copy.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

from procon.adapters.base import Adapter, ExecutionContext
from procon.core.models.action import Receipt


class FilesystemAdapter(Adapter):
    """Params: ``operation`` and ``path`` (relative paths are joined to
    the working directory); ``write`` also takes ``content``,
    ``copy_tree`` a ``source`` directory and ``unpack`` an ``archive``.
    """

    operations = {
        "exists": ("path",),
        "read": ("path",),
        "write": ("path", "content"),
        "remove": ("path",),
        "mkdir": ("path",),
        "rmtree": ("path",),
        "copy_tree": ("path", "source"),
        "unpack": ("path", "archive"),
    }

    @property
    def name(self) -> str:
        return "filesystem"

    def is_available(self) -> bool:
        return True

    @staticmethod
    def _resolve(context: ExecutionContext, param: str) -> Path:
        path = Path(context.params[param]).expanduser()
        if not path.is_absolute():
            path = Path(context.working_dir) / path
        return path

    def check(self, context: ExecutionContext) -> str:
        if not str(context.params["path"]).strip():
            return "Empty path"
        if context.operation == "copy_tree" and not self._resolve(context, "source").is_dir():
            return f"Source directory not found: {self._resolve(context, 'source')}"
        if context.operation == "unpack" and not self._resolve(context, "archive").is_file():
            return f"Archive not found: {self._resolve(context, 'archive')}"
        return ""

    def execute(self, context: ExecutionContext) -> Receipt:
        target = self._resolve(context, "path")
        try:
            return getattr(self, f"_{context.operation}")(context, target)
        except OSError as e:
            return context.fail(f"Filesystem error: {e}", operation=context.operation, path=str(target))

    def _exists(self, ctx: ExecutionContext, target: Path) -> Receipt:
        exists = target.exists()
        return ctx.succeed(str(exists), path=str(target), exists=exists, is_dir=target.is_dir())

    def _read(self, ctx: ExecutionContext, target: Path) -> Receipt:
        if not target.is_file():
            return ctx.fail(f"File not found: {target}", path=str(target))
        return ctx.succeed(target.read_text(encoding="utf-8"), path=str(target))

    def _write(self, ctx: ExecutionContext, target: Path) -> Receipt:
        content = ctx.params["content"]
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp, target)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
        return ctx.succeed(f"Wrote {target}", path=str(target), size=len(content))

    def _remove(self, ctx: ExecutionContext, target: Path) -> Receipt:
        existed = target.exists()
        target.unlink(missing_ok=True)
        return ctx.succeed(f"Removed {target}" if existed else f"Already absent: {target}",
                           path=str(target), existed=existed)

    def _mkdir(self, ctx: ExecutionContext, target: Path) -> Receipt:
        target.mkdir(parents=True, exist_ok=True)
        return ctx.succeed(f"Created {target}", path=str(target))

    def _rmtree(self, ctx: ExecutionContext, target: Path) -> Receipt:
        existed = target.is_dir()
        if existed:
            shutil.rmtree(target)
        return ctx.succeed(f"Removed {target}" if existed else f"Already absent: {target}",
                           path=str(target), existed=existed)

    def _replace_tree(self, target: Path, fill) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(dir=target.parent, prefix=f".{target.name}."))
        try:
            fill(staging)
            if target.exists():
                shutil.rmtree(target)
            os.replace(staging, target)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    def _copy_tree(self, ctx: ExecutionContext, target: Path) -> Receipt:
        source = self._resolve(ctx, "source")
        self._replace_tree(
            target,
            lambda staging: shutil.copytree(source, staging, symlinks=True, dirs_exist_ok=True),
        )
        return ctx.succeed(f"Copied {source} to {target}", path=str(target), source=str(source))

    def _unpack(self, ctx: ExecutionContext, target: Path) -> Receipt:
        archive = self._resolve(ctx, "archive")
        try:
            self._replace_tree(target, lambda staging: shutil.unpack_archive(archive, staging))
        except (shutil.ReadError, ValueError) as e:
            return ctx.fail(f"Cannot unpack {archive}: {e}", path=str(target), archive=str(archive))
        return ctx.succeed(f"Unpacked {archive} to {target}", path=str(target), archive=str(archive))
