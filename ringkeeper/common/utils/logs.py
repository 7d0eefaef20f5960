# Copyright (c) 2010-2012 OpenStack Foundation
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import errno
import logging
from logging.handlers import SysLogHandler, SYSLOG_UDP_PORT
import os
import stat
import sys

from ringkeeper.common.utils.config import config_true_value


class LogAdapter(logging.LoggerAdapter, object):
    """
    Wraps a ``Logger`` so every record carries the ``server`` name used by
    :class:`LogFormatter`, and every message starts with ``prefix``.
    """

    def __init__(self, logger, server, prefix=''):
        logging.LoggerAdapter.__init__(self, logger, {})
        self.prefix = prefix
        self.server = server

    def process(self, msg, kwargs):
        kwargs['extra'] = {'server': self.server}
        return '%s%s' % (self.prefix, msg), kwargs


class LogFormatter(logging.Formatter):
    """
    Formatter that folds every record onto a single line (syslog style,
    newlines become ``#012``) and optionally shortens it to
    ``max_line_length`` characters by cutting out the middle.
    """

    def __init__(self, fmt=None, datefmt=None, max_line_length=0):
        logging.Formatter.__init__(self, fmt=fmt, datefmt=datefmt)
        self.max_line_length = max_line_length

    def format(self, record):
        if not hasattr(record, 'server'):
            # third-party loggers don't go through LogAdapter
            record.server = record.name

        record.message = record.getMessage()
        if self.usesTime():
            record.asctime = self.formatTime(record, self.datefmt)
        msg = (self._fmt % record.__dict__).replace('\n', '#012')
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(
                record.exc_info).replace('\n', '#012')
        if record.exc_text:
            if not msg.endswith('#012'):
                msg += '#012'
            msg += record.exc_text
        return self._shorten(msg)

    def _shorten(self, msg):
        limit = self.max_line_length
        if limit <= 0 or len(msg) <= limit:
            return msg
        if limit < 7:
            return msg[:limit]
        half = (limit - 5) // 2
        return msg[:half] + ' ... ' + msg[-half:]


def _syslog_handler(conf):
    facility = getattr(SysLogHandler, conf.get('log_facility', 'LOG_LOCAL0'),
                       SysLogHandler.LOG_LOCAL0)
    udp_host = conf.get('log_udp_host')
    if udp_host:
        udp_port = int(conf.get('log_udp_port', SYSLOG_UDP_PORT))
        return SysLogHandler(address=(udp_host, udp_port), facility=facility)
    log_address = conf.get('log_address', '/dev/log')
    try:
        if stat.S_ISSOCK(os.stat(log_address).st_mode):
            return SysLogHandler(address=log_address, facility=facility)
    except OSError as e:
        if e.errno not in (errno.ENOTSOCK, errno.ENOENT):
            raise
    # no local syslog socket, fall back to UDP on localhost
    return SysLogHandler(facility=facility)


def _swap_handler(logger, registry, handler):
    """Replace the handler previously installed in ``registry``."""
    old = registry.pop(logger, None)
    if old is not None:
        logger.removeHandler(old)
    if handler is not None:
        logger.addHandler(handler)
        registry[logger] = handler


_syslog_handlers = {}
_console_handlers = {}


def get_logger(conf, name=None, log_to_console=False, log_route=None,
               fmt="%(server)s: %(message)s"):
    """
    Build the logger used by the ringkeeper command line tools.

    **Log config and defaults**::

        log_facility = LOG_LOCAL0
        log_level = INFO
        log_name = ringkeeper
        log_max_line_length = 0
        log_udp_host = (disabled)
        log_udp_port = logging.handlers.SYSLOG_UDP_PORT
        log_address = /dev/log
        log_to_console = no

    Calling it again for the same ``log_route`` replaces the handlers it
    installed the first time rather than stacking new ones.

    :param conf: config dict, usually a section from :func:`readconf`
    :param name: ``server`` field of each line; defaults to ``log_name``
                 from ``conf`` or 'ringkeeper'
    :param log_to_console: also write to stderr
    :param log_route: name of the underlying ``logging.Logger``; defaults
                      to ``name``
    :param fmt: log format
    :return: a :class:`LogAdapter`
    """
    conf = conf or {}
    if name is None:
        name = conf.get('log_name', 'ringkeeper')
    logger = logging.getLogger(log_route or name)
    logger.propagate = False
    formatter = LogFormatter(
        fmt=fmt, max_line_length=int(conf.get('log_max_line_length', 0)))

    handler = _syslog_handler(conf)
    handler.setFormatter(formatter)
    _swap_handler(logger, _syslog_handlers, handler)

    console = None
    if log_to_console or config_true_value(conf.get('log_to_console', 'no')):
        console = logging.StreamHandler(sys.__stderr__)
        console.setFormatter(formatter)
    _swap_handler(logger, _console_handlers, console)

    logger.setLevel(
        getattr(logging, conf.get('log_level', 'INFO').upper(), logging.INFO))
    return LogAdapter(logger, name)


def get_prefixed_logger(logger, prefix):
    """
    Return a :class:`LogAdapter` sharing ``logger``'s underlying logger and
    server name but with ``prefix`` in front of each message.
    """
    return LogAdapter(logger.logger, logger.server, prefix=prefix)
