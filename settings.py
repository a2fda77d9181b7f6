import os

import dotenv

# Some origins refuse anything that does not look like a desktop browser
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)

# name -> (type, default)
SETTINGS = {
    "HOST": (str, "0.0.0.0"),
    "PORT": (int, 8080),
    "UPSTREAM_USER_AGENT": (str, DEFAULT_USER_AGENT),
    "UPSTREAM_CONNECT_TIMEOUT": (float, 5.0),
    "UPSTREAM_READ_TIMEOUT": (float, 30.0),
    "UPSTREAM_POOL_SIZE": (int, 32),
    "STREAM_CHUNK_SIZE": (int, 64 * 1024),
    "MAX_PLAYLIST_BYTES": (int, 5 * 1024 * 1024),
    "MAX_PROXY_BYTES": (int, 50 * 1024 * 1024),
    "LOG_LEVEL": (str, "INFO"),
}


def load_settings(environ=None, dotenv_path=None) -> dict:
    """Read relay settings from the environment, after loading a .env file.

    Returns a dict of upper-case keys ready for ``app.config.update``.
    """
    if environ is None:
        dotenv.load_dotenv(dotenv_path)
        environ = os.environ
    settings = {}
    for name, (cast, default) in SETTINGS.items():
        raw = environ.get(name)
        if raw is None or raw.strip() == "":
            settings[name] = default
            continue
        try:
            settings[name] = cast(raw.strip())
        except ValueError:
            raise ValueError(f"Invalid value for {name}: {raw!r}")
    if settings["UPSTREAM_POOL_SIZE"] < 1:
        raise ValueError("UPSTREAM_POOL_SIZE must be at least 1")
    settings["LOG_LEVEL"] = settings["LOG_LEVEL"].upper()
    return settings
