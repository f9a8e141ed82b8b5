import logging


def setup_logger(level: int = logging.INFO):
    logger = logging.getLogger()
    logger.propagate = False

    # logger is singleton so clear handlers and set level to prevent duplicate logs
    logger.handlers.clear()
    logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # connection pool chatter drowns out request lines at INFO
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))

    return logger
