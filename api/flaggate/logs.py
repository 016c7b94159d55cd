import logging
import os
from typing import Optional


def boot_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s msg=%(message)s",
    )
