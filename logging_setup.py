# ===============================================================
# logging_setup.py
# ===============================================================
import logging
import re
import sys

import sentry_sdk

# ------------------------------------------------
# 🔒 Secret Filter to hide tokens / API keys
# ------------------------------------------------
class SecretFilter(logging.Filter):
    TOKEN_PATTERN = re.compile(r"\b\d{9,10}:[A-Za-z0-9_-]{35,}\b")
    KEY_PATTERN = re.compile(
        r"(?:secret|token|key|password|api)[^\s=:'\"]*['\"]?[:=]['\"]?([\w-]+)['\"]?",
        re.IGNORECASE
    )

    def filter(self, record):
        msg = str(record.msg)
        msg = self.TOKEN_PATTERN.sub("[SECRET]", msg)
        msg = self.KEY_PATTERN.sub("[REDACTED]", msg)
        record.msg = msg
        if record.args:
            record.args = tuple(self.TOKEN_PATTERN.sub("[SECRET]", str(a)) for a in record.args)
        return True


formatter = logging.Formatter(
    "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    "%Y-%m-%d %H:%M:%S",
)

# Shared logger for background loops
logger = logging.getLogger("ContestEngine")


def setup_logging(level: str = "INFO", sentry_dsn: str | None = None, environment: str = "production"):
    """
    Configure the root logger once at startup:
    - stdout handler with secrets masked
    - uvicorn logs flow through the same formatter
    - Sentry initialised when a DSN is provided
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(SecretFilter())

    root = logging.getLogger()
    root.setLevel(numeric_level)
    if not any(isinstance(h, logging.StreamHandler) and h.formatter is formatter for h in root.handlers):
        root.addHandler(handler)

    for noisy in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(noisy).handlers = []
        logging.getLogger(noisy).propagate = True

    if sentry_dsn:
        sentry_sdk.init(
            dsn=sentry_dsn,
            traces_sample_rate=1.0,
            environment=environment,
        )

    logger.info("✅ Secure logger initialized (tokens masked from output).")
    return logger


def alert(exc: BaseException, message: str):
    """Log at ERROR and forward to Sentry (no-op when Sentry is not initialised)."""
    logger.error(message)
    sentry_sdk.capture_exception(exc)
