import sys
from http import HTTPStatus

# Set to True for detailed logging, False for minimal logging
DEBUG = True

# Statuses the bridge actually sees from kimi-ai.chat get their own marker;
# everything else falls back to the marker for its status class.
_STATUS_EMOJI = {
    HTTPStatus.UNAUTHORIZED: "🔒",
    HTTPStatus.FORBIDDEN: "🚫",
    HTTPStatus.NOT_FOUND: "❓",
    HTTPStatus.TOO_MANY_REQUESTS: "⏱️",
    HTTPStatus.BAD_GATEWAY: "🌩️",
    HTTPStatus.SERVICE_UNAVAILABLE: "🚧",
}
_STATUS_CLASS_EMOJI = {2: "✅", 3: "↪️", 4: "⚠️", 5: "❌"}


def _write_unencodable(text: str) -> None:
    # Consoles on legacy code pages reject emoji; degrade the text instead of raising.
    encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
    try:
        sys.stdout.buffer.write(text.encode(encoding, errors="replace"))
    except (AttributeError, LookupError, OSError):
        print(text.encode("ascii", errors="backslashreplace").decode("ascii"), end="")


def debug_print(*args, sep: str = " ", end: str = "\n", **kwargs):
    """Print a console log line when DEBUG is on."""
    if not DEBUG:
        return
    try:
        print(*args, sep=sep, end=end, **kwargs)
    except UnicodeEncodeError:
        _write_unencodable(sep.join(str(a) for a in args) + end)


def get_status_emoji(status_code: int) -> str:
    if status_code in _STATUS_EMOJI:
        return _STATUS_EMOJI[status_code]
    return _STATUS_CLASS_EMOJI.get(status_code // 100, "ℹ️")


def describe_status(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return f"Unknown Status {status_code}"


def log_http_status(status_code: int, context: str = ""):
    """Log an upstream HTTP status as `<emoji> HTTP <code>: <phrase> (<context>)`."""
    line = f"{get_status_emoji(status_code)} HTTP {status_code}: {describe_status(status_code)}"
    debug_print(f"{line} ({context})" if context else line)


def redact(value: object, keep: int = 6) -> str:
    text = str(value or "")
    if len(text) <= keep:
        return text
    return text[:keep] + "..."
