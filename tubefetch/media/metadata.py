"""
Pydantic model and parsing helpers for the metadata the tool prints before a download.
"""

import json
import logging
import re
from typing import Optional

from pydantic import BaseModel, ValidationError

from tubefetch.utils.formatting import format_clock, truncate

log = logging.getLogger(__name__)

# The tool prints 'NA' for unavailable fields, which is not valid JSON.
_NA_PLACEHOLDER = re.compile(r":\s*NA([,}])")

METADATA_PRINT_TEMPLATE = (
    '{"title":%(title)j,"uploader":%(uploader)j,"channel":%(channel)j,'
    '"upload_date":%(upload_date)j,"duration":%(duration)j,'
    '"thumbnail":%(thumbnail)j,"description":%(description)j,'
    '"webpage_url":%(webpage_url)j,"playlist_title":%(playlist_title)j}'
)


class VideoMetadata(BaseModel):
    """Descriptive information about a remote media item."""

    title: Optional[str] = None
    uploader: Optional[str] = None
    channel: Optional[str] = None
    upload_date: Optional[str] = None  # YYYYMMDD
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    description: Optional[str] = None
    webpage_url: Optional[str] = None
    playlist_title: Optional[str] = None

    @property
    def album(self) -> Optional[str]:
        return self.playlist_title or self.channel

    @property
    def year(self) -> Optional[str]:
        if self.upload_date and len(self.upload_date) >= 4:
            return self.upload_date[:4]
        return None


def parse_metadata_output(raw_output: str) -> Optional[VideoMetadata]:
    """
    Parses the JSON line printed by the tool in metadata mode.

    Returns None for empty or unparseable output instead of raising.
    """
    payload = raw_output.strip()
    if not payload:
        log.debug("No metadata output received.")
        return None

    # Playlists or retries can print more than one line; the last one wins.
    payload = payload.splitlines()[-1]
    payload = _NA_PLACEHOLDER.sub(r":null\1", payload)

    try:
        return VideoMetadata.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError) as e:
        log.debug(f"Failed to parse metadata JSON: {e}. Raw: {raw_output[-500:]}")
        return None


def log_metadata(metadata: VideoMetadata) -> None:
    """Logs extracted metadata in a compact, structured form."""
    log.info(
        f"[dim]Metadata:[/dim] {metadata.title or 'N/A'} "
        f"by {metadata.uploader or 'N/A'} "
        f"({format_clock(metadata.duration)})"
    )
    log.debug(
        f"Metadata detail: channel={metadata.channel or 'N/A'} "
        f"album={metadata.album or 'N/A'} year={metadata.year or 'N/A'} "
        f"thumbnail={metadata.thumbnail or 'N/A'} "
        f"url={metadata.webpage_url or 'N/A'} "
        f"description={truncate(metadata.description)}"
    )
