__all__ = ['__version__']

__version__ = '0.1.0'

import logging
from tiledsr.logger import logger_setup
logger = logging.getLogger('tiledsrlog')

logger_setup()
