import logging


# Configure logging
def setup_logger():
    """Setup logger with both file and stream handlers"""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)
    # R chatter goes to debug, keep it out of the parent loggers
    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s',
                                  datefmt='%Y-%m-%d %H:%M:%S')

    fh = logging.FileHandler('jqtl.log')
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger


def set_verbose(verbose: bool = True):
    """Switch the jqtl logger between INFO and DEBUG (DEBUG shows every R command)."""
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


# create logger instance
logger = setup_logger()
