"""
Utilities for handling artifact names and source URL parsing.
"""

import re
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlparse

from pathvalidate import sanitize_filename

MAX_TITLE_LENGTH = 200
WATCH_URL = "https://www.youtube.com/watch?v={}"


def sanitize_title(title: Optional[str], max_length: int = MAX_TITLE_LENGTH) -> str:
    """
    Turns an arbitrary media title into a safe file name stem.

    Characters illegal on common filesystems are removed, whitespace is
    collapsed, and the result is truncated. Falls back to 'untitled'.
    """
    cleaned = sanitize_filename(title or "", platform="universal")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length].strip()
    return cleaned or "untitled"


def build_artifact_stem(title: Optional[str], token: str) -> str:
    """
    Combines an optional title with the per-attempt token.

    The token keeps names unique across concurrent sessions and lets the
    cancellation sweep match leftovers by prefix.
    """
    if not title or not title.strip():
        return token
    return f"{sanitize_title(title)} [{token}]"


def parse_source_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Classifies a source URL.

    Returns ('playlist', url) for playlist pages, ('video', url) for single
    items (a watch URL carrying both 'v' and 'list' is reduced to the bare
    video), or None when the URL is not an http(s) URL.
    """
    if not url or not url.startswith("http"):
        return None
    parsed = urlparse(url)
    if not parsed.netloc:
        return None

    query = parse_qs(parsed.query)
    video_id = (query.get("v") or [""])[0]
    playlist_id = (query.get("list") or [""])[0]

    if video_id and "list" in query:
        return "video", WATCH_URL.format(video_id)
    if "/playlist" in parsed.path or playlist_id:
        return "playlist", url
    return "video", url


def is_bare_name(name: str) -> bool:
    """True if a client-supplied artifact name cannot escape its directory."""
    if not name or name in (".", ".."):
        return False
    return Path(name).name == name and "\\" not in name and "\x00" not in name


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)
