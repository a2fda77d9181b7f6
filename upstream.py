import enum
import logging
import threading
import time
from typing import Iterator, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter

# Inbound request headers passed on to the origin
FORWARDED_REQUEST_HEADERS = ("Range",)

# Origin response headers passed back to the client, everything else is dropped
FORWARDED_RESPONSE_HEADERS = {
    "content-type": "Content-Type",
    "accept-ranges": "Accept-Ranges",
    "access-control-allow-origin": "Access-Control-Allow-Origin",
}


# Seconds between cancellation checks while waiting for a pool slot
SLOT_POLL_INTERVAL = 0.1


class ContentKind(enum.Enum):
    PLAYLIST = "playlist"
    BINARY = "binary"


# (signal, value) pairs, any match makes the response a playlist
PLAYLIST_RULES = (
    ("content-type", "application/vnd.apple.mpegurl"),
    ("content-type", "application/x-mpegurl"),
    ("content-type", "audio/mpegurl"),
    ("content-type", "audio/x-mpegurl"),
    ("suffix", ".m3u8"),
)


class UpstreamUnavailable(Exception):
    """The origin could not be reached (DNS, refused connection, timeout)."""

    def __init__(self, url: str, reason):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class UpstreamTooLarge(Exception):
    """A body that has to be buffered exceeded the configured bound."""

    def __init__(self, url: str, limit: int):
        super().__init__(f"{url}: body larger than {limit} bytes")
        self.url = url
        self.limit = limit


def classify(content_type: Optional[str], url: str) -> ContentKind:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    path = urlsplit(url).path.lower()
    for signal, value in PLAYLIST_RULES:
        if signal == "content-type" and media_type == value:
            return ContentKind.PLAYLIST
        if signal == "suffix" and path.endswith(value):
            return ContentKind.PLAYLIST
    return ContentKind.BINARY


def forwardable_headers(headers: Mapping[str, str]) -> dict:
    forwarded = {}
    for name, value in headers.items():
        canonical = FORWARDED_RESPONSE_HEADERS.get(name.lower())
        if canonical:
            forwarded[canonical] = value
    return forwarded


class CancelToken:
    """Cooperative cancellation shared by the upstream fetch and the client write.

    Callbacks registered with on_cancel run once, on the first cancel().
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, callback):
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()


class UpstreamResponse:
    def __init__(self, response: requests.Response, requested_url: str, release=None):
        self._response = response
        self._release = release
        self._chunks = None
        self.requested_url = requested_url
        self.status = response.status_code
        self.headers = {name.lower(): value for name, value in response.headers.items()}
        # Final location after redirects, used as the playlist base
        self.url = response.url or requested_url

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")

    def chunks(self, chunk_size: int) -> Iterator[bytes]:
        # One shared iterator so a partial read_bounded() can be resumed
        if self._chunks is None:
            self._chunks = self._response.iter_content(chunk_size=chunk_size)
        return self._chunks

    def read_bounded(self, limit: int, chunk_size: int) -> Tuple[bytes, bool]:
        """Buffer the body up to limit bytes.

        Returns (data, complete). When complete is False the rest of the body
        is still available from chunks().
        """
        buffer = bytearray()
        for chunk in self.chunks(chunk_size):
            buffer.extend(chunk)
            if len(buffer) > limit:
                return bytes(buffer), False
        return bytes(buffer), True

    def close(self):
        self._response.close()
        release, self._release = self._release, None
        if release is not None:
            release()

    def __repr__(self):
        return f"<UpstreamResponse {self.status} {self.requested_url}>"


class UpstreamClient:
    def __init__(self, user_agent: str, connect_timeout: float = 5.0, read_timeout: float = 30.0, pool_size: int = 32):
        self.user_agent = user_agent
        self.timeout = (connect_timeout, read_timeout)
        self.session = requests.Session()
        # Bounds upstream connections across all hosts, the adapter pools are per host
        self._slots = threading.BoundedSemaphore(pool_size)
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, pool_block=True)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_config(cls, config: Mapping) -> "UpstreamClient":
        return cls(
            user_agent=config["UPSTREAM_USER_AGENT"],
            connect_timeout=config["UPSTREAM_CONNECT_TIMEOUT"],
            read_timeout=config["UPSTREAM_READ_TIMEOUT"],
            pool_size=config["UPSTREAM_POOL_SIZE"],
        )

    def outbound_headers(self, inbound: Optional[Mapping[str, str]]) -> dict:
        headers = {"User-Agent": self.user_agent}
        if inbound:
            lowered = {name.lower(): value for name, value in inbound.items()}
            for name in FORWARDED_REQUEST_HEADERS:
                value = lowered.get(name.lower())
                if value:
                    headers[name] = value
        return headers

    def fetch(self, url: str, query=None, headers: Optional[Mapping[str, str]] = None,
              cancel: Optional[CancelToken] = None) -> UpstreamResponse:
        """GET url from the origin whatever status it answers with.

        Only network failures raise, as UpstreamUnavailable.
        """
        if cancel is not None and cancel.cancelled:
            raise UpstreamUnavailable(url, "request cancelled before fetch")
        self._acquire_slot(url, cancel)
        try:
            response = self.session.get(
                url,
                params=query or None,
                headers=self.outbound_headers(headers),
                stream=True,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            self._slots.release()
            raise UpstreamUnavailable(url, e) from e
        except Exception:
            self._slots.release()
            raise
        upstream = UpstreamResponse(response, url, release=self._slots.release)
        logging.info(f"Upstream answered {upstream.status} for {url}")
        if cancel is not None:
            cancel.on_cancel(upstream.close)
        return upstream

    def _acquire_slot(self, url: str, cancel: Optional[CancelToken]):
        """Wait for a free upstream slot, at most the connect timeout.

        Polls in short steps so a cancelled request stops waiting early.
        """
        deadline = time.monotonic() + self.timeout[0]
        acquired = self._slots.acquire(blocking=False)
        while not acquired:
            if cancel is not None and cancel.cancelled:
                raise UpstreamUnavailable(url, "request cancelled while waiting for a connection")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logging.error(f"Upstream connection pool exhausted, giving up on {url}")
                raise UpstreamUnavailable(url, "connection pool exhausted")
            acquired = self._slots.acquire(timeout=min(remaining, SLOT_POLL_INTERVAL))
        if cancel is not None and cancel.cancelled:
            self._slots.release()
            raise UpstreamUnavailable(url, "request cancelled while waiting for a connection")

    def close(self):
        self.session.close()
