#
# Electrum - lightweight Bitcoin client
# Copyright (C) 2025 The Electrum Developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
import ast
import asyncio
import importlib
import json
import os
import time
from typing import TYPE_CHECKING, Optional, Dict, Any

import aiohttp
from aiohttp import web

from .backend import WalletBackend
from .commands import Commands, known_commands
from .logging import Logger
from .registry import RegistryError
from .service import NWCService
from .subscriptions import RelaySessionFactory
from .util import UserFacingException, MyEncoder, os_chmod

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


class DaemonNotRunning(Exception):
    pass


def get_lockfile(config: 'SimpleConfig') -> str:
    return os.path.join(config.path, 'daemon')


def get_rpcsock_path(config: 'SimpleConfig') -> str:
    return os.path.join(config.path, 'daemon_rpc_socket')


def remove_lockfile(lockfile: str) -> None:
    os.unlink(lockfile)


async def get_file_descriptor(config: 'SimpleConfig') -> Optional[int]:
    """Tries to create the lockfile, using O_EXCL to prevent races.
    Returns None if another daemon is running and answering.
    A stale lockfile is removed and creation retried.
    """
    lockfile = get_lockfile(config)
    while True:
        try:
            return os.open(lockfile, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except OSError:
            pass
        try:
            await request(config, 'ping')
            return None
        except DaemonNotRunning:
            # Couldn't connect; remove lockfile and try again.
            remove_lockfile(lockfile)


async def request(config: 'SimpleConfig', method: str, params: Optional[Dict[str, Any]] = None,
                  *, timeout: float = 60) -> Any:
    lockfile = get_lockfile(config)
    try:
        with open(lockfile) as f:
            socktype, path, create_time = ast.literal_eval(f.read())
        if socktype != 'unix':
            raise Exception(f"corrupt lockfile; socktype={socktype!r}")
    except Exception:
        raise DaemonNotRunning()
    payload = {"id": 0, "method": method, "params": params or {}}
    try:
        connector = aiohttp.UnixConnector(path=path)
        async with aiohttp.ClientSession(connector=connector,
                                         timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.post('http://localhost/', json=payload) as resp:
                response = await resp.json()
    except (aiohttp.ClientConnectionError, FileNotFoundError, ConnectionRefusedError):
        raise DaemonNotRunning()
    if 'error' in response:
        raise UserFacingException(response['error']['message'])
    return response['result']


def load_backend(config: 'SimpleConfig') -> WalletBackend:
    """Instantiates the wallet backend named by the nwc_backend config var ('module:callable').
    The callable is called with the config.
    """
    entry_point = config.NWC_BACKEND
    if not entry_point:
        raise UserFacingException("No wallet backend configured. Set 'nwc_backend' to 'module:callable'.")
    module_name, sep, attr_name = entry_point.partition(':')
    if not sep or not module_name or not attr_name:
        raise UserFacingException(f"Invalid wallet backend {entry_point!r}, expected 'module:callable'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise UserFacingException(f"Cannot import wallet backend module {module_name!r}: {e}") from e
    factory = getattr(module, attr_name, None)
    if factory is None:
        raise UserFacingException(f"Wallet backend {attr_name!r} not found in {module_name!r}")
    backend = factory(config)
    if not isinstance(backend, WalletBackend):
        raise UserFacingException(f"{entry_point} did not return a WalletBackend")
    return backend


class CommandsServer(Logger):

    def __init__(self, daemon: 'Daemon', fd: int):
        Logger.__init__(self)
        self.daemon = daemon
        self.fd = fd
        self.config = daemon.config
        self.sockpath = get_rpcsock_path(self.config)
        self.app = web.Application()
        self.app.router.add_post("/", self.handle)
        self.runner = None  # type: Optional[web.AppRunner]
        self.cmd_runner = Commands(
            config=self.config, registry=daemon.service.registry, daemon=daemon)

    async def run(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        if os.path.exists(self.sockpath):
            os.unlink(self.sockpath)
        site = web.UnixSite(self.runner, self.sockpath)
        try:
            await site.start()
        except Exception as e:
            raise Exception(f"failed to start CommandsServer at {self.sockpath}. got exc: {e!r}") from None
        os_chmod(self.sockpath, 0o600)
        os.write(self.fd, bytes(repr(('unix', self.sockpath, time.time())), 'utf8'))
        os.close(self.fd)
        self.fd = None
        self.logger.info(f"now running and listening. addr={self.sockpath}")

    async def stop(self) -> None:
        if self.fd is not None:
            os.close(self.fd)
            self.fd = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

    def _response(self, _id, *, result=None, error: Optional[str] = None) -> web.Response:
        if error is not None:
            content = {"id": _id, "error": {"code": -32000, "message": error}}
        else:
            content = {"id": _id, "result": result}
        return web.json_response(content, dumps=lambda x: json.dumps(x, cls=MyEncoder))

    async def handle(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
            _id = payload.get('id')
            method = payload['method']
            params = payload.get('params') or {}
            if not isinstance(params, dict):
                raise ValueError("params must be an object")
        except Exception as e:
            return self._response(None, error=f"invalid request: {e!r}")
        if method == 'ping':
            return self._response(_id, result=True)
        if method not in known_commands:
            return self._response(_id, error=f"unknown command: {method}")
        try:
            result = await getattr(self.cmd_runner, method)(**params)
        except (UserFacingException, RegistryError) as e:
            return self._response(_id, error=str(e))
        except Exception as e:
            self.logger.exception(f"error running command {method}")
            return self._response(_id, error=repr(e))
        return self._response(_id, result=result)


class Daemon(Logger):

    def __init__(
            self,
            config: 'SimpleConfig',
            backend: WalletBackend,
            fd: int,
            *,
            session_factory: Optional[RelaySessionFactory] = None,
    ):
        Logger.__init__(self)
        self.config = config
        self.service = NWCService(config, backend, session_factory=session_factory)
        self.commands_server = CommandsServer(self, fd)
        self._stopping_soon = None  # type: Optional[asyncio.Event]

    async def run(self) -> None:
        self._stopping_soon = asyncio.Event()
        try:
            await self.service.start()
            await self.commands_server.run()
            await self._stopping_soon.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        if self._stopping_soon:
            self._stopping_soon.set()

    async def stop(self) -> None:
        self.logger.info("stop() entered. initiating shutdown")
        try:
            await self.commands_server.stop()
            if self.service.is_running:
                await self.service.stop()
        finally:
            self.logger.info("removing lockfile")
            lockfile = get_lockfile(self.config)
            if os.path.exists(lockfile):
                remove_lockfile(lockfile)
            self.logger.info("stopped")
