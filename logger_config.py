# logger_config.py
import logging
import os
import re
import sys

# ---------- helpers ----------

_CTRL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")

DEBUG_ENV = "DEBUG_OOR"


def _sanitize_text(text: str) -> str:
    """Strip control characters (NUL included) but keep tabs and newlines."""
    if not isinstance(text, str):
        text = str(text)
    return _CTRL_RE.sub("", text)


def debug_enabled() -> bool:
    return os.getenv(DEBUG_ENV, "").strip() == "1"


# ---------- tolerant logger class ----------

class SafeLogger(logging.Logger):
    """
    Accepts print-style calls such as
        logger.debug("Column map:", colmap)
    When args are given but the message has no %-placeholder, the args are
    joined onto the message instead of being %-formatted. A "%" anywhere in
    the message turns this off, so interpolate scraped text with f-strings.
    """
    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False, stacklevel=1):
        if args and "%" not in str(msg):
            suffix = " ".join(map(str, args))
            sep = "" if str(msg).endswith((" ", "\n")) else " "
            msg = f"{msg}{sep}{suffix}"
            args = ()
        super()._log(level, msg, args, exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel)


# Must be installed before any of our loggers exist
logging.setLoggerClass(SafeLogger)


# ---------- formatters ----------

class ColorFormatter(logging.Formatter):
    RESET  = "\x1b[0m"
    BOLD   = "\x1b[1m"
    BLACK  = "\x1b[30m"
    RED    = "\x1b[31m"
    GREEN  = "\x1b[32m"
    YELLOW = "\x1b[33m"
    BLUE   = "\x1b[34m"
    GRAY   = "\x1b[38m"

    COLORS = {
        logging.DEBUG:   GRAY + BOLD,
        logging.INFO:    BLUE + BOLD,
        logging.WARNING: YELLOW + BOLD,
        logging.ERROR:   RED,
        logging.CRITICAL: RED + BOLD,
    }

    def __init__(self, datefmt="%Y-%m-%d %H:%M:%S"):
        super().__init__(datefmt=datefmt, style="{")

    def format(self, record: logging.LogRecord) -> str:
        msg = _sanitize_text(record.getMessage())
        ts = self.formatTime(record, self.datefmt)
        level_color = self.COLORS.get(record.levelno, self.GRAY)

        out = (
            f"{self.BLACK}{self.BOLD}[{ts}]{self.RESET} "
            f"{level_color}[{record.levelname:<8}]{self.RESET} "
            f"{self.GREEN}{self.BOLD}{record.name}{self.RESET}: {msg}"
        )
        if record.exc_info:
            out += "\n" + _sanitize_text(self.formatException(record.exc_info))
        if record.stack_info:
            out += "\n" + self.formatStack(record.stack_info)
        return out


class PlainFormatter(logging.Formatter):
    def __init__(self, datefmt="%Y-%m-%d %H:%M:%S"):
        super().__init__("[{asctime}] [{levelname:<8}] {name}: {message}", datefmt=datefmt, style="{")

    def format(self, record: logging.LogRecord) -> str:
        return _sanitize_text(super().format(record))


# ---------- setup ----------

def get_logger(
    name: str = "standings_bot",
    level: int | None = None,
    logfile: str | None = "standings.log",
) -> logging.Logger:
    """
    Create/return the bot logger:
      - colourised console output on a TTY, plain otherwise
      - plain UTF-8 file log, truncated on start
      - DEBUG level when DEBUG_OOR=1, INFO otherwise
      - handlers attached once, however often this module is imported
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if level is None:
        level = logging.DEBUG if debug_enabled() else logging.INFO

    logger.setLevel(level)
    logger.propagate = False

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorFormatter() if sys.stdout.isatty() else PlainFormatter())
    logger.addHandler(ch)

    if logfile:
        fh = logging.FileHandler(filename=logfile, encoding="utf-8", mode="w")
        fh.setLevel(level)
        fh.setFormatter(PlainFormatter())
        logger.addHandler(fh)

    return logger


def install_excepthook(target: logging.Logger) -> None:
    """Send uncaught exceptions to the log file instead of bare stderr."""
    def log_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            return sys.__excepthook__(exc_type, exc_value, exc_traceback)
        target.critical("Unhandled exception", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = log_exception


# Module-level logger, imported directly by the rest of the bot
logger = get_logger(logfile=os.getenv("STANDINGS_LOGFILE", "standings.log") or None)
