# Copyright (C) 2019 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

import datetime
import logging
import os
import pathlib
import platform
import sys
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


ROOT_LOGGER_NAME = "nwcserver"
LOGFILE_PREFIX = "nwcserver_"
KEEP_LOGFILES = 10

# component names used in log lines, instead of the full class path
_SHORT_NAMES = {
    "registry.ConnectionRegistry": "registry",
    "subscriptions.SubscriptionManager": "subscriptions",
    "dispatcher.RequestDispatcher": "dispatcher",
    "relay.NostrRelaySessionFactory": "relays",
    "relay.NostrRelaySession": "relay",
    "service.NWCService": "service",
}


def _short_name(name: str) -> str:
    if name.startswith(ROOT_LOGGER_NAME + "."):
        name = name[len(ROOT_LOGGER_NAME) + 1:]
    for long_name, short in _SHORT_NAMES.items():
        if name == long_name or name.startswith(long_name + "."):
            return short + name[len(long_name):]
    return name


class NWCLogFormatter(logging.Formatter):
    """Shortens logger names. Console lines get the component shortcut
    after the level letter, e.g. 'I/D | dispatcher | ...'.
    """

    def __init__(self, fmt: str, *, show_shortcut: bool = False):
        super().__init__(fmt=fmt)
        self.show_shortcut = show_shortcut

    def formatTime(self, record, datefmt=None):
        # ISO 8601, UTC
        date = datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc)
        return date.strftime(datefmt or "%Y%m%dT%H%M%S.%fZ")

    def format(self, record):
        record = logging.makeLogRecord(record.__dict__)  # do not touch the original
        record.name = _short_name(record.name)
        text = super().format(record)
        shortcut = getattr(record, 'nwc_shortcut', None)
        if self.show_shortcut and shortcut:
            text = f"{text[:1]}/{shortcut}{text[1:]}"
        return text


console_formatter = NWCLogFormatter("%(levelname).1s | %(name)s | %(message)s", show_shortcut=True)
file_formatter = NWCLogFormatter("%(asctime)22s | %(levelname)8s | %(name)s | %(message)s")


class ShortcutTagger(logging.Filter):
    """Attached to the logger of a Logger subclass; marks its records with LOGGING_SHORTCUT."""

    def __init__(self, shortcut: str):
        super().__init__()
        self.shortcut = shortcut

    def filter(self, record):
        record.nwc_shortcut = self.shortcut
        return True


class ShortcutSelector(logging.Filter):
    """Console filter for the -V option.

    'DR' shows only the dispatcher and registry, '^R' hides the registry.
    Errors always pass.
    """

    def __init__(self, spec: str):
        super().__init__()
        self.exclude = spec.startswith('^')
        self.shortcuts = set(spec[1:] if self.exclude else spec)

    def filter(self, record):
        if record.levelno >= logging.ERROR:
            return True
        shortcut = getattr(record, 'nwc_shortcut', None)
        selected = shortcut is not None and shortcut in self.shortcuts
        return not selected if self.exclude else selected


def apply_verbosity(verbosity: str) -> None:
    """Sets log levels from the -v option.

    'debug' sets the level of all of nwcserver, 'relay=warning' that of a single module.
    Items are comma separated: 'info,relay=debug'.
    """
    for item in verbosity.split(','):
        if not item:
            continue
        name, sep, level = item.rpartition('=')
        if sep and not name:
            raise ValueError(f"invalid log filter: {item!r}")
        logger = get_logger(name) if name else nwcserver_logger
        logger.setLevel(level.upper())


root_logger = logging.getLogger()
root_logger.setLevel(logging.WARNING)

nwcserver_logger = logging.getLogger(ROOT_LOGGER_NAME)
nwcserver_logger.setLevel(logging.DEBUG)

console_handler = None  # type: Optional[logging.Handler]
_logfile_path = None  # type: Optional[pathlib.Path]


def get_logger(name: str) -> logging.Logger:
    if name.startswith(ROOT_LOGGER_NAME + "."):
        name = name[len(ROOT_LOGGER_NAME) + 1:]
    return nwcserver_logger.getChild(name)


_logger = get_logger(__name__)
_logger.setLevel(logging.INFO)


def configure_console_logging(*, verbosity: Optional[str] = None, verbosity_shortcuts: Optional[str] = None) -> None:
    """Logs to stderr. Without -v or -V only warnings and errors are shown."""
    global console_handler
    if console_handler is not None:
        _logger.warning("console logging already configured")
        return
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)
    if not verbosity and not verbosity_shortcuts:
        console_handler.setLevel(logging.WARNING)
        return
    console_handler.setLevel(logging.DEBUG)
    if isinstance(verbosity, str) and verbosity != '*':
        apply_verbosity(verbosity)
    if isinstance(verbosity_shortcuts, str) and verbosity_shortcuts:
        console_handler.addFilter(ShortcutSelector(verbosity_shortcuts))


def _prune_logfiles(log_directory: pathlib.Path, keep: int) -> None:
    old_files = sorted(log_directory.glob(f"{LOGFILE_PREFIX}*.log"), reverse=True)[keep:]
    for path in old_files:
        try:
            path.unlink()
        except OSError as e:
            _logger.warning(f"cannot delete old logfile {path.name}: {e}")


def configure_file_logging(log_directory: pathlib.Path) -> pathlib.Path:
    """Logs everything at debug level to a new file in log_directory."""
    global _logfile_path
    assert _logfile_path is None, 'file logging already configured'
    log_directory.mkdir(exist_ok=True)
    # the new file is created below, so keep one less
    _prune_logfiles(log_directory, KEEP_LOGFILES - 1)
    timestamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    _logfile_path = log_directory / f"{LOGFILE_PREFIX}{timestamp}_{os.getpid()}.log"
    handler = logging.FileHandler(_logfile_path, encoding='utf-8')
    handler.setFormatter(file_formatter)
    handler.setLevel(logging.DEBUG)
    root_logger.addHandler(handler)
    return _logfile_path


class Logger:
    """Mixin that gives instances a 'self.logger' named after their class.

    The name is suffixed with diagnostic_name(), e.g. the connection id of a relay session.
    """

    # single letter used by the -V filter; need not be unique
    LOGGING_SHORTCUT = None  # type: Optional[str]

    def __init__(self):
        cls = type(self)
        name = f"{cls.__module__}.{cls.__name__}" if cls.__module__ else cls.__name__
        try:
            diag_name = self.diagnostic_name()
        except Exception as e:
            raise Exception("diagnostic name not yet available?") from e
        if diag_name:
            name += f".[{diag_name}]"
        self.logger = get_logger(name)
        if self.LOGGING_SHORTCUT and not any(isinstance(f, ShortcutTagger) for f in self.logger.filters):
            self.logger.addFilter(ShortcutTagger(self.LOGGING_SHORTCUT))

    def diagnostic_name(self):
        return ''


def configure_logging(config: 'SimpleConfig', *, log_to_file: Optional[bool] = None) -> None:
    verbosity = config.get('verbosity')
    verbosity_shortcuts = config.get('verbosity_shortcuts')
    configure_console_logging(verbosity=verbosity, verbosity_shortcuts=verbosity_shortcuts)
    if log_to_file is None:
        log_to_file = config.get('log_to_file', False)
    if log_to_file:
        configure_file_logging(pathlib.Path(config.path) / "logs")

    from .version import NWCSERVER_VERSION
    _logger.info(f"nwcserver {NWCSERVER_VERSION}, python {sys.version.split()[0]} on {platform.platform()}")
    _logger.info(f"wallet connect relay {config.NWC_RELAY}, backend {config.NWC_BACKEND!r}")
    _logger.info(f"logfile: {_logfile_path}, verbosity {verbosity!r}, shortcuts {verbosity_shortcuts!r}")
