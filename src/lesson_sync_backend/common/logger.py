'''
universal logger
'''
# In src/lesson_sync_backend/common/logger.py
import logging
import sys

def setup_logger():
    """
    Configures and returns the root logger for the application.
    """
    logger = logging.getLogger('LS-backend')
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)

    formatter = logging.Formatter(
        '%(asctime)s - %(module)s - %(levelname)s\n - %(message)s'
    )
    handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(handler)

    return logger

# Create a single logger instance to be imported by other modules
log = setup_logger()
