"""
The artifact storage directory shared by all sessions and the retention sweeper.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

from tubefetch.models.config import FORMAT_MAP, get_format_info
from tubefetch.utils.path import create_dir, is_bare_name

log = logging.getLogger(__name__)

# Side files the tool may write next to a download that are never the result.
IGNORED_SUFFIXES = (".mhtml",)

# Media, or the tool's partial downloads of media. Only these are ever removed
# by name pattern rather than by exact name.
SWEEPABLE_EXTENSIONS = tuple(
    sorted({ext for info in FORMAT_MAP.values() for ext in info["extensions"]})
) + (".part", ".ytdl")


def is_sweepable(name: str, extensions: Iterable[str] = SWEEPABLE_EXTENSIONS) -> bool:
    lower = name.lower()
    return lower.endswith(tuple(extensions)) or ".part-frag" in lower


class ArtifactStore:
    """
    Name-based access to the artifact directory.

    Every deletion re-checks existence immediately before unlinking and treats
    a file that vanished in between as already deleted, since natural cleanup,
    cancellation, and retention can all race on the same file.
    """

    def __init__(self, root: Path):
        self.root = root

    def ensure(self) -> None:
        create_dir(self.root)

    def path(self, name: str) -> Path:
        return self.root / name

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def size(self, name: str) -> Optional[int]:
        try:
            return self.path(name).stat().st_size
        except FileNotFoundError:
            return None

    def resolve(self, name: str) -> Optional[Path]:
        """Returns the path of an existing artifact for a client-supplied name."""
        if not is_bare_name(name):
            return None
        path = self.path(name)
        return path if path.is_file() else None

    def safe_delete(self, name: str) -> bool:
        """Deletes an artifact if present. Returns True if this call removed it."""
        return delete_path(self.path(name))

    def remove_prefixed(self, prefix: str) -> list[str]:
        """Deletes every sweepable file whose name starts with `prefix`."""
        return [
            name
            for name in self.names()
            if name.startswith(prefix) and is_sweepable(name) and self.safe_delete(name)
        ]

    def names(self) -> list[str]:
        """Lists file names currently in the directory."""
        if not self.root.is_dir():
            return []
        return [entry.name for entry in self.root.iterdir() if entry.is_file()]

    def find_artifact(
        self, stem: str, media_format: str, extra_prefixes: Iterable[str] = ()
    ) -> Optional[str]:
        """
        Locates the artifact a finished extraction produced.

        Tries the exact expected name first, then any file whose name starts
        with the stem (or one of `extra_prefixes`) and whose extension belongs
        to the format's extension class.
        """
        info = get_format_info(media_format)
        expected = f"{stem}.{info['ext']}"
        if self.exists(expected):
            return expected

        prefixes = (stem, *extra_prefixes)
        candidates = sorted(
            name
            for name in self.names()
            if name.startswith(prefixes)
            and not name.endswith(IGNORED_SUFFIXES)
            and name.lower().endswith(info["extensions"])
        )
        return candidates[0] if candidates else None


def delete_path(path: Path) -> bool:
    """Unlinks a file, treating a concurrently-removed file as a no-op."""
    if not path.exists():
        return False
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        log.warning(f"[yellow]Could not delete {path.name}:[/yellow] {e}")
        return False
