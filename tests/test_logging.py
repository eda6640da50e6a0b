import logging
import pathlib

from nwcserver import logging as nwc_logging
from nwcserver.logging import (ShortcutSelector, ShortcutTagger, apply_verbosity, get_logger, _short_name,
                               _prune_logfiles)

from . import NWCTestCase


def make_record(level=logging.INFO, shortcut=None) -> logging.LogRecord:
    record = logging.LogRecord("nwcserver.x", level, __file__, 1, "msg", None, None)
    if shortcut:
        ShortcutTagger(shortcut).filter(record)
    return record


class TestLogging(NWCTestCase):

    def test_short_names(self):
        self.assertEqual("registry", _short_name("nwcserver.registry.ConnectionRegistry"))
        self.assertEqual("relay.[abc]", _short_name("nwcserver.relay.NostrRelaySession.[abc]"))
        self.assertEqual("relays", _short_name("nwcserver.relay.NostrRelaySessionFactory"))
        self.assertEqual("keystore.KeyStore", _short_name("nwcserver.keystore.KeyStore"))
        self.assertEqual("aiohttp.access", _short_name("aiohttp.access"))

    def test_shortcut_selector(self):
        only_dispatcher = ShortcutSelector('D')
        self.assertTrue(only_dispatcher.filter(make_record(shortcut='D')))
        self.assertFalse(only_dispatcher.filter(make_record(shortcut='R')))
        self.assertFalse(only_dispatcher.filter(make_record()))
        self.assertTrue(only_dispatcher.filter(make_record(logging.ERROR, shortcut='R')))
        not_registry = ShortcutSelector('^R')
        self.assertFalse(not_registry.filter(make_record(shortcut='R')))
        self.assertTrue(not_registry.filter(make_record(shortcut='D')))
        self.assertTrue(not_registry.filter(make_record()))

    def test_console_line_carries_shortcut(self):
        record = make_record(shortcut='D')
        record.name = "nwcserver.dispatcher.RequestDispatcher"
        self.assertEqual("I/D | dispatcher | msg", nwc_logging.console_formatter.format(record))
        # the original record is left alone
        self.assertEqual("nwcserver.dispatcher.RequestDispatcher", record.name)

    def test_apply_verbosity(self):
        relay_logger = get_logger("relay")
        try:
            apply_verbosity("info,relay=warning")
            self.assertEqual(logging.INFO, nwc_logging.nwcserver_logger.level)
            self.assertEqual(logging.WARNING, relay_logger.level)
            with self.assertRaises(ValueError):
                apply_verbosity("=debug")
        finally:
            nwc_logging.nwcserver_logger.setLevel(logging.DEBUG)
            relay_logger.setLevel(logging.NOTSET)

    def test_prune_logfiles(self):
        log_dir = pathlib.Path(self.nwcserver_path)
        names = [f"nwcserver_2025010{i}T000000Z_1.log" for i in range(1, 6)]
        for name in names:
            (log_dir / name).write_text("")
        (log_dir / "other.log").write_text("")
        _prune_logfiles(log_dir, 2)
        remaining = sorted(p.name for p in log_dir.iterdir())
        self.assertEqual(sorted(names[-2:] + ["other.log"]), remaining)
