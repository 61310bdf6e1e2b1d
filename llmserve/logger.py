"""
Logging setup shared by the server and the CLI.
"""

import logging

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("uvicorn.access", "urllib3", "filelock", "httpx")


def setup_logging(level: str = "info") -> None:
    """Configure stdlib logging for the whole process."""
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level}")

    logging.basicConfig(format=LOG_FORMAT, level=numeric, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))
