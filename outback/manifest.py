"""HLS manifest post-processing.

ffmpeg writes segment references as bare filenames relative to the playlist.
Players fetch the playlist from ``/watch/...`` rather than from the
recordings directory, so every segment line has to be turned into an
absolute URL under the static recordings prefix before it is served.
"""

from __future__ import annotations

import re
from functools import lru_cache
from urllib.parse import quote

_LINE_ENDINGS = ("\r\n", "\n", "\r")


@lru_cache(maxsize=16)
def _segment_line_re(segment_prefix: str) -> re.Pattern[str]:
    # Optional directory part (ffmpeg may write the segment path as given),
    # then a filename ending in <prefix>_<n>.ts.
    return re.compile(
        r"^(?:[^\s#]\S*/)?(?P<name>[^/\s]*" + re.escape(segment_prefix) + r"_\d+\.ts)$"
    )


def resolve_scheme(forwarded_proto: str | None, secure: bool) -> str:
    """Pick the scheme clients used to reach us.

    Reverse proxies report it in ``X-Forwarded-Proto``; when several hops
    appended values, the first one is the client-facing scheme.
    """
    if forwarded_proto:
        first = forwarded_proto.split(",")[0].strip()
        if first:
            return first.lower()
    return "https" if secure else "http"


def segment_base_url(scheme: str, host: str, static_prefix: str, session_dir: str) -> str:
    prefix = static_prefix.strip("/")
    path = f"/{prefix}/{quote(session_dir)}/" if prefix else f"/{quote(session_dir)}/"
    return f"{scheme}://{host}{path}"


def _split_line_ending(line: str) -> tuple[str, str]:
    for ending in _LINE_ENDINGS:
        if line.endswith(ending):
            return line[: -len(ending)], ending
    return line, ""


def is_segment_line(line: str, segment_prefix: str) -> bool:
    body, _ = _split_line_ending(line)
    if not body or body.startswith("#") or "://" in body:
        return False
    return _segment_line_re(segment_prefix).match(body) is not None


def rewrite_manifest(text: str, base_url: str, segment_prefix: str = "segment") -> str:
    """Return ``text`` with each segment filename line replaced by a URL.

    Directive lines and anything that is not a segment reference are copied
    through untouched, line endings included.
    """
    pattern = _segment_line_re(segment_prefix)
    out: list[str] = []
    for line in text.splitlines(keepends=True):
        body, ending = _split_line_ending(line)
        if body and not body.startswith("#") and "://" not in body:
            match = pattern.match(body)
            if match is not None:
                out.append(base_url + match.group("name") + ending)
                continue
        out.append(line)
    return "".join(out)
