import structlog, sys, os

from .config import log_path

_LOG_STREAM = None
_CONFIGURED = False

SECRET_FIELDS = ("secret", "password", "share_password", "key", "master_key", "file_key")


def _log_handle():
    """Open (or reuse) the 0600 log file handle, by default under ~/.local/state/gitvault."""
    global _LOG_STREAM
    if _LOG_STREAM is None:
        path = log_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        os.chmod(path, 0o600)
        _LOG_STREAM = os.fdopen(fd, "a", buffering=1)
    return _LOG_STREAM


def _filter_secrets(_, __, event_dict):
    for field in SECRET_FIELDS:
        event_dict.pop(field, None)
    return event_dict


def _human_renderer(_, __, event_dict):
    """Render structlog event dictionaries into human-readable timestamped lines."""
    ts = event_dict.pop("timestamp", "")
    level = event_dict.pop("level", "").upper()
    event = event_dict.pop("event", "")
    extras = " ".join(f"{k}={event_dict[k]}" for k in sorted(event_dict))
    return f"{ts} [{level}] {event} {extras}".strip()


def get_logger(debug: bool | None = None):
    """Return a structlog logger; stderr in debug, otherwise the gitvault log file.

    Passing `debug=None` keeps whatever configuration is already active.
    """
    global _CONFIGURED
    if debug is None and _CONFIGURED:
        return structlog.get_logger()

    processors = [
        _filter_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.dict_tracebacks,
        _human_renderer,
    ]
    target = sys.stderr if debug else _log_handle()

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=target),
    )
    _CONFIGURED = True
    return structlog.get_logger()
