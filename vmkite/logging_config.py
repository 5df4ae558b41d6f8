import logging

from vmkite.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    if not any(getattr(h, "_vmkite", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._vmkite = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)
    # pyVmomi logs every SOAP round trip at DEBUG
    logging.getLogger("pyVmomi").setLevel(max(level, logging.INFO))
