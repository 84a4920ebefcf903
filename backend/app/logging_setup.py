import logging
import sys

def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # one line per request is noise next to the pipeline logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # side-effect failures must always reach the log, whatever the root level
    logging.getLogger("backend.recommender.side_effects").setLevel(logging.WARNING)
