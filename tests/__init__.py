import asyncio
import os
import unittest
import threading
import tempfile
import shutil

import nwcserver
import nwcserver.logging
from nwcserver import util
from nwcserver.logging import Logger
from nwcserver.simple_config import SimpleConfig


nwcserver.logging.configure_console_logging(verbosity="*")

nwcserver.util.AS_LIB_USER_I_WANT_TO_MANAGE_MY_OWN_ASYNCIO_LOOP = True


class NWCTestCase(unittest.IsolatedAsyncioTestCase, Logger):
    """Base class for our unit tests."""

    # maxDiff = None  # for debugging

    # some unit tests are modifying globals... so we run sequentially:
    _test_lock = threading.Lock()

    def __init__(self, *args, **kwargs):
        Logger.__init__(self)
        unittest.IsolatedAsyncioTestCase.__init__(self, *args, **kwargs)

    def setUp(self):
        have_lock = self._test_lock.acquire(timeout=0.1)
        if not have_lock:
            # This can happen when trying to run the tests in parallel,
            # or if a prior test raised  during `setUp` or `asyncSetUp` and never released the lock.
            raise Exception("timed out waiting for test_lock")
        super().setUp()
        self.nwcserver_path = tempfile.mkdtemp(prefix="nwcserver-unittest-base-")
        assert util._asyncio_event_loop is None, "global event loop already set?!"

    async def asyncSetUp(self):
        await super().asyncSetUp()
        loop = util.get_asyncio_loop()
        # IsolatedAsyncioTestCase creates event loops with debug=True, which makes the tests take ~4x time
        if not (os.environ.get("PYTHONASYNCIODEBUG") or os.environ.get("PYTHONDEVMODE")):
            loop.set_debug(False)
        util._asyncio_event_loop = loop

    def tearDown(self):
        util.callback_mgr.clear_all_callbacks()
        shutil.rmtree(self.nwcserver_path)
        super().tearDown()
        util._asyncio_event_loop = None  # cleared here, at the ~last possible moment. asyncTearDown is too early.
        self._test_lock.release()

    def make_config(self, **options) -> SimpleConfig:
        options.setdefault('nwcserver_path', self.nwcserver_path)
        return SimpleConfig(options, read_user_config_function=lambda _: {})


async def fast_sleep():
    # sleep a few event loop iterations
    for i in range(5):
        await asyncio.sleep(0)
