import logging
import re
from urllib.parse import urlsplit

import requests
from flask import Blueprint, Flask, Response, current_app, jsonify, request, stream_with_context

from playlist import rewrite_playlist
from settings import load_settings
from upstream import (
    CancelToken,
    ContentKind,
    UpstreamClient,
    UpstreamTooLarge,
    UpstreamUnavailable,
    classify,
    forwardable_headers,
)

PLAYLIST_MIMETYPE = "application/vnd.apple.mpegurl"

# Characters that cannot appear in a host name
INVALID_HOST_CHARS = re.compile(r"[\x00-\x20\x7f/\\?#@%<>\"'`{}|^]")

relay = Blueprint("relay", __name__)


class ClientInputError(ValueError):
    """The relay request itself is unusable (missing or malformed url)."""


class PartialWriteConflict(Exception):
    """Upstream failed after the status line and headers went to the client."""

    def __init__(self, url, reason):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


# -=- Request helpers -=-
def target_url(args) -> str:
    raw = (args.get("url") or "").strip()
    if not raw:
        raise ClientInputError('Missing "url" query parameter')
    if raw.startswith("//"):
        raw = "http:" + raw
    elif "://" not in raw:
        raw = "http://" + raw
    try:
        parts = urlsplit(raw)
        parts.port  # raises on a bad port
    except ValueError as e:
        raise ClientInputError(f"Malformed url: {e}")
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise ClientInputError(f"Malformed url: {raw}")
    if INVALID_HOST_CHARS.search(parts.hostname):
        raise ClientInputError(f"Malformed url host: {parts.hostname!r}")
    try:
        requests.Request("GET", raw).prepare()
    except requests.exceptions.RequestException as e:
        raise ClientInputError(f"Malformed url: {e}")
    return raw


def forwarded_query(args) -> list:
    return [(key, value) for key, value in args.items(multi=True) if key != "url"]


def self_origin(headers, scheme: str, host: str, script_root: str = "") -> str:
    """Scheme and host the client used to reach us, so relay URLs stay same-origin."""
    proto = headers.get("X-Forwarded-Proto", "").split(",")[0].strip() or scheme
    return f"{proto}://{host}{script_root}"


def error_response(message: str, status: int, details=None):
    body = {"error": message}
    if details is not None:
        body["details"] = str(details)
    return jsonify(body), status


# -=- Response relay -=-
def body_chunks(upstream, prefix: bytes, chunk_size: int, cancel: CancelToken):
    """Yield the upstream body as it arrives, starting with anything already buffered.

    The server only pulls the next chunk once the previous one was written,
    so upstream is never read faster than the client accepts data.
    """
    try:
        if prefix:
            yield prefix
        for chunk in upstream.chunks(chunk_size):
            if cancel.cancelled:
                break
            if chunk:
                yield chunk
    except requests.exceptions.RequestException as e:
        logging.error(f"PartialWriteConflict for {upstream.requested_url}: {e}")
        raise PartialWriteConflict(upstream.requested_url, e) from e
    finally:
        cancel.cancel()


def stream_response(upstream, headers: dict, cancel: CancelToken, prefix: bytes = b""):
    response = Response(
        stream_with_context(body_chunks(upstream, prefix, current_app.config["STREAM_CHUNK_SIZE"], cancel)),
        status=upstream.status,
        headers=headers,
    )
    # Client may go away before the body is ever iterated
    response.call_on_close(cancel.cancel)
    return response


def relay_response(upstream, origin: str, cancel: CancelToken):
    config = current_app.config
    headers = forwardable_headers(upstream.headers)
    kind = classify(upstream.content_type, upstream.requested_url)
    if kind is not ContentKind.PLAYLIST or not 200 <= upstream.status < 300:
        return stream_response(upstream, headers, cancel)

    limit = config["MAX_PLAYLIST_BYTES"]
    try:
        data, complete = upstream.read_bounded(limit, config["STREAM_CHUNK_SIZE"])
    except requests.exceptions.RequestException as e:
        cancel.cancel()
        logging.error(f"UpstreamUnavailable while reading playlist {upstream.requested_url}: {e}")
        return error_response("Proxy Request Failed", 500, e)

    if not complete:
        logging.warning(f"Playlist from {upstream.requested_url} exceeds {limit} bytes, relaying it unmodified")
        return stream_response(upstream, headers, cancel, prefix=data)
    cancel.cancel()

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        logging.warning(f"Body of {upstream.requested_url} is not UTF-8 text, relaying it unmodified")
        return Response(data, status=upstream.status, headers=headers)

    body = rewrite_playlist(text, upstream.url, origin).encode("utf-8")
    headers.setdefault("Content-Type", PLAYLIST_MIMETYPE)
    headers["Content-Length"] = str(len(body))
    logging.info(f"Rewrote playlist {upstream.requested_url} ({len(data)} -> {len(body)} bytes)")
    return Response(body, status=upstream.status, headers=headers)


# -=- API endpoints -=-
@relay.route("/stream", methods=["GET", "OPTIONS"])
def stream():
    if request.method == "OPTIONS":
        return Response(status=200)
    try:
        url = target_url(request.args)
    except ClientInputError as e:
        logging.error(f"ClientInputError on /stream: {e}")
        return error_response(str(e), 400)

    logging.info(f"Received stream request for {url}")
    cancel = CancelToken()
    try:
        upstream = current_app.extensions["upstream"].fetch(
            url, forwarded_query(request.args), request.headers, cancel
        )
    except UpstreamUnavailable as e:
        logging.error(f"UpstreamUnavailable for {url}: {e.reason}")
        return error_response("Proxy Request Failed", 500, e.reason)

    origin = self_origin(request.headers, request.scheme, request.host, request.script_root)
    return relay_response(upstream, origin, cancel)


@relay.route("/proxy", methods=["GET", "OPTIONS"])
def proxy():
    if request.method == "OPTIONS":
        return Response(status=200)
    try:
        url = target_url(request.args)
    except ClientInputError as e:
        logging.error(f"ClientInputError on /proxy: {e}")
        return error_response(str(e), 400)

    logging.info(f"Received proxy request for {url}")
    config = current_app.config
    try:
        upstream = current_app.extensions["upstream"].fetch(url, forwarded_query(request.args))
        try:
            data, complete = upstream.read_bounded(config["MAX_PROXY_BYTES"], config["STREAM_CHUNK_SIZE"])
        finally:
            upstream.close()
        if not complete:
            raise UpstreamTooLarge(url, config["MAX_PROXY_BYTES"])
    except UpstreamUnavailable as e:
        logging.error(f"UpstreamUnavailable for {url}: {e.reason}")
        return error_response("Failed to fetch data", 500, e.reason)
    except requests.exceptions.RequestException as e:
        logging.error(f"UpstreamUnavailable while reading {url}: {e}")
        return error_response("Failed to fetch data", 500, e)
    except UpstreamTooLarge as e:
        logging.error(f"UpstreamTooLarge for {url}: limit {e.limit} bytes")
        return error_response("Upstream response too large", 502, e)

    headers = {}
    if upstream.content_type:
        headers["Content-Type"] = upstream.content_type
    return Response(data, status=upstream.status, headers=headers)


@relay.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True})


@relay.after_app_request
def apply_cors(response):
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Range, Content-Type, Accept, X-Requested-With"
    return response


def create_app(config=None) -> Flask:
    """Build the relay application.

    Settings come from the environment (and .env) unless config is given,
    in which case it overrides the built-in defaults only.
    """
    app = Flask(__name__)
    if config is None:
        app.config.update(load_settings())
    else:
        app.config.update(load_settings({}))
        app.config.update(config)
    app.extensions["upstream"] = UpstreamClient.from_config(app.config)
    app.register_blueprint(relay)
    return app
