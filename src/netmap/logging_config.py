import logging


def setup_logging(level: str = "INFO", stream=None):
    levelno = getattr(logging, str(level).upper(), logging.INFO)
    fmt = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    logging.basicConfig(level=levelno, format=fmt, stream=stream)
    # scapy logs interface warnings at import time
    logging.getLogger("scapy.runtime").setLevel(max(levelno, logging.ERROR))
