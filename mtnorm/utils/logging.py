import logging


def get_logger(name="mtnorm", format="%(levelname)s %(message)s"):
    """Return a logger that writes to the console.

    Parameters
    ----------
    name : str, optional
        Logger name.
    format : str, optional
        Format string of the console handler.

    Returns
    -------
    logger : logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(format))
        logger.addHandler(handler)
    return logger


logger = get_logger()
