# -*- coding: utf-8 -*-
# tiledsr - Tiled super-resolution inference
#
# Copyright (c) 2024 - now
# tiledsr developers

import logging
import os
import getpass
import sys
import uuid
import tempfile
from typing import Optional, Union

import colorlog

# Formats for colorlog.LevelFormatter
LOG_LEVEL_FORMATS = {
    'DEBUG': '%(log_color)s%(msg)s (%(module)s:%(lineno)d)',
    'INFO': '%(log_color)s%(msg)s',
    'WARNING': '%(log_color)sWARNING: %(msg)s (%(module)s:%(lineno)d)',
    'ERROR': '%(log_color)sERROR: %(msg)s (%(module)s:%(lineno)d)',
    'CRITICAL': '%(log_color)sCRITICAL: %(msg)s (%(module)s:%(lineno)d)',
}
LOG_COLORS = {
    'DEBUG': 'blue', 'INFO': 'cyan', 'WARNING': 'bold_yellow',
    'ERROR': 'red', 'CRITICAL': 'red,bg_white'
}


def _log_file_path() -> str:
    try:
        user_name = getpass.getuser()
    except (KeyError, OSError):  # No passwd entry, e.g. in containers
        user_name = 'unknown'
    return os.path.join(tempfile.gettempdir(), f'{user_name}_{uuid.uuid4()}_tiledsr.log')


def logger_setup(
        name: str = 'tiledsrlog',
        stream_level: Optional[Union[int, str]] = None
) -> logging.Logger:
    """Attach a colored console handler and a full debug log file to the
    ``name`` logger.

    The console shows messages from ``stream_level`` on. If it is not given,
    the ``TILEDSR_LOG_LEVEL`` environment variable is used (default:
    ``INFO``). The log file in the temp directory always receives everything
    and is only created once the first message is written.
    Loggers that already have handlers are left untouched."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    if stream_level is None:
        stream_level = os.environ.get('TILEDSR_LOG_LEVEL', 'INFO').upper()
    logger.setLevel(logging.DEBUG)

    lfile_handler = logging.FileHandler(_log_file_path(), delay=True)
    lfile_handler.setLevel(logging.DEBUG)
    lfile_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] [%(levelname)s]\t%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'))
    logger.addHandler(lfile_handler)

    lstream_handler = colorlog.StreamHandler(sys.stdout)
    lstream_handler.setFormatter(
        colorlog.LevelFormatter(fmt=LOG_LEVEL_FORMATS, log_colors=LOG_COLORS))
    lstream_handler.setLevel(stream_level)
    logger.addHandler(lstream_handler)

    logger.propagate = False
    return logger
