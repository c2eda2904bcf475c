"""
HLS media playlist rendering for the publish step.

The publisher ffmpeg processes read this manifest as a live HLS input, so it
never carries #EXT-X-ENDLIST.
"""

import math
import os
from pathlib import Path
from typing import Iterable, Tuple, Union

PLAYLIST_VERSION = 3


def render_playlist(segments: Iterable[Tuple[int, str, float]]) -> str:
    """
    Render a live media playlist.

    Args:
        segments: (segment_id, uri, duration_seconds) in ascending id order

    Returns:
        Playlist text. A discontinuity tag is emitted wherever ids are not consecutive.

    Raises:
        ValueError: If no segments are given
    """
    entries = list(segments)
    if not entries:
        raise ValueError("cannot render a playlist without segments")

    target = max(1, math.ceil(max(duration for _, _, duration in entries)))
    lines = [
        "#EXTM3U",
        f"#EXT-X-VERSION:{PLAYLIST_VERSION}",
        f"#EXT-X-TARGETDURATION:{target}",
        f"#EXT-X-MEDIA-SEQUENCE:{entries[0][0]}",
    ]
    previous = None
    for segment_id, uri, duration in entries:
        if previous is not None and segment_id != previous + 1:
            lines.append("#EXT-X-DISCONTINUITY")
        lines.append(f"#EXTINF:{duration:.3f},")
        lines.append(uri)
        previous = segment_id
    return "\n".join(lines) + "\n"


def write_playlist(path: Union[str, Path], text: str) -> Path:
    """Write the playlist atomically so readers never see a partial manifest."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except OSError:
        try:
            if tmp.exists():
                tmp.unlink()
        except OSError:
            pass
        raise
    return path
