from loguru import logger
import sys
import os


def setup_logging(level: str = "INFO", log_dir: str = None):
    """
    Configure logging:
    - stdout: for Docker logs
    - file: <repo>/logs/alerts.log with rotation (10MB, 7 backups)
    """
    logger.remove()

    logger.add(sys.stdout, level=level, backtrace=False, diagnose=False)

    if log_dir is None:
        log_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")
    os.makedirs(log_dir, exist_ok=True)

    log_file = os.path.join(log_dir, "alerts.log")
    logger.add(
        log_file,
        level=level,
        rotation="10 MB",
        retention=7,
        compression="gz",
        backtrace=True,
        diagnose=False,       # No local variable dumps (owner contact data)
        enqueue=True          # Sweep workers log from threads
    )

    logger.info(f"Logging configured: console + file ({log_file})")
    return logger
