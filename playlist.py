"""HLS playlist parsing and rewriting.

A playlist is read as a sequence of typed lines. Only ``Reference`` lines
(URIs on their own line) are rewritten; they are resolved against the
playlist's own location and replaced by URLs pointing back at the relay, so
that variant playlists and media segments are fetched through it as well.

URIs carried inside directive attributes (``#EXT-X-KEY:URI=...``,
``#EXT-X-MAP:URI=...``) are left untouched.
"""
import logging
import re
from typing import List, Optional
from urllib.parse import parse_qs, quote, urljoin, urlsplit, urlunsplit

ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)
RELAY_ENDPOINTS = ("/stream", "/proxy")


class PlaylistLine:
    kind = None

    def __init__(self, text: str):
        self.text = text

    def __eq__(self, other):
        return type(self) is type(other) and self.text == other.text

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.text!r}>"


class Blank(PlaylistLine):
    kind = "blank"


class Directive(PlaylistLine):
    kind = "directive"


class Reference(PlaylistLine):
    kind = "reference"

    @property
    def uri(self) -> str:
        return self.text.strip()


class PlaylistDocument:
    def __init__(self, lines: List[PlaylistLine], base_url: str):
        self.lines = lines
        self.base_url = base_url

    def references(self) -> List[Reference]:
        return [line for line in self.lines if isinstance(line, Reference)]

    def render(self) -> str:
        return "\n".join(line.text for line in self.lines)

    def __repr__(self):
        return f"<PlaylistDocument base={self.base_url} lines={len(self.lines)}>"


def classify_line(raw: str) -> PlaylistLine:
    stripped = raw.strip()
    if not stripped:
        return Blank(raw)
    if stripped.startswith("#"):
        return Directive(raw)
    return Reference(raw)


def parse_playlist(text: str, base_url: str) -> PlaylistDocument:
    # Keep the trailing empty entry so a final newline survives render()
    lines = []
    for raw in text.split("\n"):
        if raw.endswith("\r"):
            raw = raw[:-1]
        lines.append(classify_line(raw))
    return PlaylistDocument(lines, base_directory(base_url))


def base_directory(url: str) -> str:
    """Origin plus the path up to and including its final '/'."""
    parts = urlsplit(url)
    path = parts.path
    directory = path[: path.rfind("/") + 1] if "/" in path else "/"
    return urlunsplit((parts.scheme, parts.netloc, directory, "", ""))


def resolve_url(base_url: str, reference: str) -> str:
    """Resolve a playlist reference to an absolute upstream URL.

    Raises ValueError on input urllib cannot parse.
    """
    reference = reference.strip()
    if ABSOLUTE_URL.match(reference):
        return reference
    return urljoin(base_directory(base_url), reference)


def build_relay_url(self_origin: str, absolute_url: str, endpoint: str = "/stream") -> str:
    return f"{self_origin.rstrip('/')}{endpoint}?url={quote(absolute_url, safe='')}"


def is_relay_url(url: str, self_origin: Optional[str]) -> bool:
    """True when url already points at one of this relay's endpoints."""
    if not self_origin:
        return False
    origin = self_origin.rstrip("/")
    for endpoint in RELAY_ENDPOINTS:
        prefix = f"{origin}{endpoint}?"
        if url.startswith(prefix):
            return "url" in parse_qs(url[len(prefix):])
    return False


def rewrite_document(document: PlaylistDocument, self_origin: str, endpoint: str = "/stream") -> PlaylistDocument:
    lines = []
    for line in document.lines:
        if not isinstance(line, Reference) or is_relay_url(line.uri, self_origin):
            lines.append(line)
            continue
        try:
            absolute = resolve_url(document.base_url, line.uri)
        except ValueError as e:
            logging.error(f"Cannot resolve playlist reference {line.uri!r} against {document.base_url}: {e}")
            lines.append(line)
            continue
        lines.append(Reference(build_relay_url(self_origin, absolute, endpoint)))
    return PlaylistDocument(lines, document.base_url)


def rewrite_playlist(body_text: str, base_url: str, self_origin: str, endpoint: str = "/stream") -> str:
    document = parse_playlist(body_text, base_url)
    rewritten = rewrite_document(document, self_origin, endpoint)
    logging.debug(f"Rewrote {len(rewritten.references())} references in playlist from {base_url}")
    return rewritten.render()
