import json
import logging
import os

from colorama import Fore, Style
from colorama import init as colorama_init

# Early .env load so DISABLE_CLOUD_TELEMETRY is known before importing OTel
try:
    from dotenv import load_dotenv

    if os.path.isfile(".env"):
        load_dotenv(override=False)
except ImportError:
    pass

_telemetry_disabled = os.getenv("DISABLE_CLOUD_TELEMETRY", "false").lower() == "true"

if not _telemetry_disabled:
    from opentelemetry import trace
else:
    trace = None

colorama_init(autoreset=True)

# Custom "KEYINFO" level between INFO and WARNING for session milestones
KEYINFO_LEVEL_NUM = 25
logging.addLevelName(KEYINFO_LEVEL_NUM, "KEYINFO")


def keyinfo(self: logging.Logger, message, *args, **kws):
    if self.isEnabledFor(KEYINFO_LEVEL_NUM):
        self._log(KEYINFO_LEVEL_NUM, message, args, **kws)


logging.Logger.keyinfo = keyinfo

# Record attributes that identify a session; filled from extra=, session context or "-"
CORRELATION_FIELDS = ("session_id", "organization_id", "conn_id", "lead_id")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, PII scrubbed from the message."""

    def __init__(self, *args, enable_pii_scrubbing: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self._pii_scrubber = None
        if enable_pii_scrubbing:
            from utils.pii_filter import get_pii_scrubber

            self._pii_scrubber = get_pii_scrubber()

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if self._pii_scrubber:
            message = self._pii_scrubber.scrub_string(message)

        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "name": record.name,
            "level": record.levelname,
            "trace_id": getattr(record, "trace_id", "-"),
            "span_id": getattr(record, "span_id", "-"),
            "message": message,
            "file": record.filename,
            "function": record.funcName,
            "line": record.lineno,
        }
        for name in CORRELATION_FIELDS:
            log_record[name] = getattr(record, name, "-")
        security_event = getattr(record, "security_event", None)
        if security_event:
            log_record["security_event"] = security_event
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


class PrettyFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.GREEN,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA,
        "KEYINFO": Fore.BLUE,
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        level = record.levelname
        color = self.LEVEL_COLORS.get(level, "")
        session_id = getattr(record, "session_id", "-")
        scope = f" [{session_id[-8:]}]" if session_id and session_id != "-" else ""
        line = (
            f"{Fore.WHITE}[{timestamp}]{Style.RESET_ALL} {color}{level}{Style.RESET_ALL}"
            f"{scope} - {Fore.BLUE}{record.name}{Style.RESET_ALL}: {record.getMessage()}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# Frame-level chatter from websocket libraries and the ASGI server
_NOISY_LOG_PATTERNS = [
    "< TEXT",
    "> TEXT",
    "< CLOSE",
    "> CLOSE",
    "< PING",
    "> PING",
    "< PONG",
    "> PONG",
    "ASGI [",
]


class PIIScrubbingFilter(logging.Filter):
    """Scrubs PII from ``record.msg`` and string args before any handler sees them."""

    def __init__(self, name: str = ""):
        super().__init__(name)
        from utils.pii_filter import get_pii_scrubber

        self._scrubber = get_pii_scrubber()

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._scrubber.config.enabled:
            return True
        if isinstance(record.msg, str):
            record.msg = self._scrubber.scrub_string(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(
                self._scrubber.scrub_string(a) if isinstance(a, str) else a for a in record.args
            )
        elif isinstance(record.args, dict):
            record.args = {
                k: self._scrubber.scrub_string(v) if isinstance(v, str) else v
                for k, v in record.args.items()
            }
        return True


class WebSocketNoiseFilter(logging.Filter):
    """Drops empty messages and websocket frame traces."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if not msg or not msg.strip():
            return False
        if any(pattern in msg for pattern in _NOISY_LOG_PATTERNS):
            return False
        name = record.name.lower()
        if record.levelno <= logging.INFO and any(
            n in name for n in ("websockets", "uvicorn.protocols")
        ):
            return False
        return True


class TraceLogFilter(logging.Filter):
    """
    Enriches records with trace ids and session correlation.

    Values passed explicitly through ``extra=`` win; otherwise the active
    ``session_context`` supplies them; otherwise they default to "-".
    """

    def filter(self, record):
        record.trace_id = "-"
        record.span_id = "-"
        if trace is not None:
            span = trace.get_current_span()
            context = span.get_span_context() if span else None
            if context and context.trace_id:
                record.trace_id = f"{context.trace_id:032x}"
                record.span_id = f"{context.span_id:016x}"

        from utils.session_context import get_session_correlation

        correlation = get_session_correlation()
        defaults = correlation.to_log_record() if correlation else {}
        for name in CORRELATION_FIELDS:
            if getattr(record, name, None) in (None, "-"):
                setattr(record, name, defaults.get(name, "-"))
        return True


def get_logger(
    name: str = "callrelay",
    level: int | None = None,
    include_stream_handler: bool = True,
) -> logging.Logger:
    """
    Get or create a logger with correlation filters and a console handler.

    Azure Monitor's handler lives on the root logger (see
    ``utils.telemetry_config``), so records reach App Insights by propagation;
    no exporter handler is attached here.
    """
    logger = logging.getLogger(name)

    if level is not None or logger.level == 0:
        logger.setLevel(level or logging.INFO)

    is_production = os.environ.get("ENV", "dev").lower() == "prod"

    if not any(isinstance(f, TraceLogFilter) for f in logger.filters):
        logger.addFilter(TraceLogFilter())
    if not any(isinstance(f, WebSocketNoiseFilter) for f in logger.filters):
        logger.addFilter(WebSocketNoiseFilter())
    if is_production and not any(isinstance(f, PIIScrubbingFilter) for f in logger.filters):
        logger.addFilter(PIIScrubbingFilter())

    if include_stream_handler and not any(
        isinstance(h, logging.StreamHandler) for h in logger.handlers
    ):
        sh = logging.StreamHandler()
        sh.setFormatter(JsonFormatter() if is_production else PrettyFormatter())
        logger.addHandler(sh)

    return logger
