import json
import logging
import sys
import time


def get_logger(name="rp_auth", level=None):
    """Structured JSON-line logger shared by all rp_auth components."""
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)

    root = logging.getLogger("rp_auth")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            fmt=json.dumps({
                "ts": "%(asctime)s",
                "level": "%(levelname)s",
                "name": "%(name)s",
                "msg": "%(message)s"
            }),
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
        formatter.converter = time.gmtime  # UTC timestamps
        handler.setFormatter(formatter)
        root.addHandler(handler)
        if root.level == logging.NOTSET:
            root.setLevel(logging.INFO)

    return logger
