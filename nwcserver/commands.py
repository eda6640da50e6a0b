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
import argparse
import json
import re
import sys
from functools import wraps
from typing import TYPE_CHECKING, Optional, Dict

from . import util
from .budget import remaining_budget, has_budget_limit, is_expired, next_budget_reset_at
from .connection import (NWCConnection, READ_ONLY_PERMISSIONS, FULL_ACCESS_PERMISSIONS,
                         permission_type, DAY)
from .logging import Logger
from .registry import ConnectionRegistry
from .simple_config import SimpleConfig
from .util import UserFacingException
from .version import NWCSERVER_VERSION

if TYPE_CHECKING:
    from .daemon import Daemon


known_commands = {}  # type: Dict[str, Command]


class Command:
    def __init__(self, func, name, s):
        self.name = name
        self.requires_daemon = 'd' in s
        self.parse_docstring(func.__doc__)
        varnames = func.__code__.co_varnames[1:func.__code__.co_argcount]
        self.defaults = func.__defaults__
        if self.defaults:
            n = len(self.defaults)
            self.params = list(varnames[:-n])
            self.options = list(varnames[-n:])
        else:
            self.params = list(varnames)
            self.options = []
            self.defaults = []

    def parse_docstring(self, docstring):
        docstring = docstring or ''
        docstring = docstring.strip()
        self.description = docstring
        self.arg_descriptions = {}
        self.arg_types = {}
        for x in re.finditer(r'arg:(.*?):(.*?):(.*)$', docstring, flags=re.MULTILINE):
            self.arg_descriptions[x.group(2)] = x.group(3)
            self.arg_types[x.group(2)] = x.group(1)
            self.description = self.description.replace(x.group(), '')
        self.short_description = self.description.split('.')[0]


def command(s):
    def decorator(func):
        name = func.__name__
        known_commands[name] = Command(func, name, s)

        @wraps(func)
        async def func_wrapper(*args, **kwargs):
            cmd_runner = args[0]  # type: Commands
            cmd = known_commands[name]  # type: Command
            if cmd.requires_daemon and not cmd_runner.daemon:
                raise UserFacingException(f'{name} requires a running daemon')
            return await func(*args, **kwargs)
        return func_wrapper
    return decorator


def eval_bool(x: str) -> bool:
    if x == 'false':
        return False
    if x == 'true':
        return True
    try:
        return bool(int(x))
    except ValueError:
        raise UserFacingException(f"invalid boolean: {x!r}")


def json_loads(x: str):
    try:
        return json.loads(x)
    except json.JSONDecodeError:
        return x


arg_types = {
    'int': int,
    'bool': eval_bool,
    'str': str,
    'json': json_loads,
}


class Commands(Logger):

    def __init__(self, *, config: 'SimpleConfig', registry: ConnectionRegistry,
                 daemon: 'Daemon' = None):
        Logger.__init__(self)
        self.config = config
        self.registry = registry
        self.daemon = daemon

    def _resolve(self, key: str) -> NWCConnection:
        """Finds a connection by id or by name."""
        conn = self.registry.get(key) or self.registry.get_by_name(key)
        if conn is None:
            raise UserFacingException(f"Connection not found: {key}")
        return conn

    def _connection_info(self, conn: NWCConnection) -> dict:
        d = conn.to_json()
        d['expired'] = is_expired(conn)
        d['permission_type'] = permission_type(conn.permissions)
        if has_budget_limit(conn):
            d['budget_remaining_sats'] = remaining_budget(conn)
            d['next_budget_reset_at'] = next_budget_reset_at(conn)
        if self.daemon:
            d['subscribed'] = self.daemon.service.subscriptions.is_subscribed(conn.id)
        return d

    @staticmethod
    def _expiry(expiry_days: Optional[int]) -> Optional[int]:
        if expiry_days is None:
            return None
        if expiry_days <= 0:
            raise UserFacingException("expiry_days must be positive")
        return util.now() + expiry_days * DAY

    @command('')
    async def version(self):
        """Return the version of nwcserver."""
        return NWCSERVER_VERSION

    @command('')
    async def add_connection(self, name, budget=None, renewal=None, expiry_days=None,
                             read_only=False, isolated=False):
        """Create a new wallet connection. Returns its id and connection URI.
        The URI contains the secret of the client. It is only shown once.

        arg:str:name:name for the connection (e.g. nostr client name)
        arg:int:budget:optional spending budget in satoshis
        arg:str:renewal:budget renewal period: never, daily, weekly, monthly or yearly
        arg:int:expiry_days:optional lifetime of the connection in days
        arg:bool:read_only:only allow methods that cannot spend
        arg:bool:isolated:do not listen for requests of this connection
        """
        connection_id, uri = await self.registry.create(
            name,
            READ_ONLY_PERMISSIONS if read_only else FULL_ACCESS_PERMISSIONS,
            max_amount_sats=budget,
            budget_renewal=renewal,
            expires_at=self._expiry(expiry_days),
            isolated=isolated,
        )
        return {
            'connection_id': connection_id,
            'uri': uri,
        }

    @command('')
    async def list_connections(self):
        """List wallet connections. Secrets are never shown."""
        return [self._connection_info(conn) for conn in self.registry.list()]

    @command('')
    async def get_connection(self, key):
        """Show a single connection.

        arg:str:key:connection id or name
        """
        return self._connection_info(self._resolve(key))

    @command('')
    async def update_connection(self, key, name=None, budget=None, renewal=None, expiry_days=None,
                                permissions=None, isolated=None):
        """Update a wallet connection. Only the given fields are changed.

        arg:str:key:connection id or name
        arg:str:name:new name
        arg:int:budget:spending budget in satoshis, 0 removes the budget
        arg:str:renewal:budget renewal period: never, daily, weekly, monthly or yearly
        arg:int:expiry_days:lifetime of the connection in days, from now
        arg:json:permissions:list of allowed methods, e.g. '["get_info","get_balance"]'
        arg:bool:isolated:do not listen for requests of this connection
        """
        conn = self._resolve(key)
        fields = {}
        if name is not None:
            fields['name'] = name
        if budget is not None:
            fields['max_amount_sats'] = budget or None
        if renewal is not None:
            fields['budget_renewal'] = renewal
        if expiry_days is not None:
            fields['expires_at'] = self._expiry(expiry_days)
        if permissions is not None:
            if not isinstance(permissions, list):
                raise UserFacingException("permissions must be a list")
            fields['permissions'] = permissions
        if isolated is not None:
            fields['isolated'] = isolated
        if not fields:
            raise UserFacingException("nothing to update")
        return await self.registry.update(conn.id, **fields)

    @command('')
    async def remove_connection(self, key):
        """Delete a wallet connection and its key.

        arg:str:key:connection id or name
        """
        conn = self._resolve(key)
        return await self.registry.delete(conn.id)

    @command('')
    async def reset_budget(self, key):
        """Reset the spent amount of a connection to zero.

        arg:str:key:connection id or name
        """
        conn = self._resolve(key)
        await self.registry.reset_budget(conn.id)
        return True

    @command('d')
    async def wait_for_connection(self, key, timeout=None):
        """Wait until the client of a connection sends its first request.

        arg:str:key:connection id or name
        arg:int:timeout:seconds to wait
        """
        conn = self._resolve(key)
        return await self.registry.wait_for_first_use(conn.id, timeout=timeout)

    @command('')
    async def getconfig(self, key):
        """Return a configuration variable.

        arg:str:key:name of the configuration variable
        """
        return self.config.get(key)

    @command('')
    async def listconfig(self):
        """List the configuration variables, with their current value and description."""
        out = {}
        for key in self.config.list_config_vars():
            config_var = SimpleConfig.get_config_var(key)
            out[key] = {
                'value': self.config.get(key, config_var.get_default_value()),
                'description': config_var.get_short_desc(),
                'help': config_var.get_long_desc(),
            }
        return out

    @command('')
    async def setconfig(self, key, value):
        """Set a configuration variable.

        arg:str:key:name of the configuration variable
        arg:json:value:value (json)
        """
        self.config.set_key(key, value)
        return True

    @command('d')
    async def stop(self):
        """Stop the daemon."""
        self.daemon.request_stop()
        return "Daemon stopped"


def add_global_options(parser, suppress=False):
    group = parser.add_argument_group('global options')
    group.add_argument(
        "-v", dest="verbosity", default='',
        help=argparse.SUPPRESS if suppress else "Set verbosity (log levels)")
    group.add_argument(
        "-V", dest="verbosity_shortcuts", default='',
        help=argparse.SUPPRESS if suppress else "Set verbosity (shortcut-filter list)")
    group.add_argument(
        "-D", "--dir", dest="nwcserver_path",
        help=argparse.SUPPRESS if suppress else "nwcserver directory")
    group.add_argument(
        "-o", "--offline", action="store_true", dest=SimpleConfig.NETWORK_OFFLINE.key(), default=None,
        help=argparse.SUPPRESS if suppress else "Run offline")
    group.add_argument(
        "--forgetconfig", action="store_true", dest=SimpleConfig.CONFIG_FORGET_CHANGES.key(), default=False,
        help=argparse.SUPPRESS if suppress else "Forget config on exit")


def get_parser():
    # create main parser
    parser = argparse.ArgumentParser(
        epilog="Run 'run_nwcserver <command> -h' to see the help for a command")
    parser.add_argument("--version", dest="cmd", action='store_const', const='version',
                        help="Return the version of nwcserver.")
    add_global_options(parser)
    subparsers = parser.add_subparsers(dest='cmd', metavar='<command>')
    # daemon
    parser_daemon = subparsers.add_parser('daemon', help="Run the wallet connect service")
    parser_daemon.add_argument("--backend", dest=SimpleConfig.NWC_BACKEND.key(), default=argparse.SUPPRESS,
                               help=SimpleConfig.NWC_BACKEND.get_short_desc())
    parser_daemon.add_argument("--relay", dest=SimpleConfig.NWC_RELAY.key(), default=argparse.SUPPRESS,
                               help=SimpleConfig.NWC_RELAY.get_short_desc())
    add_global_options(parser_daemon, suppress=True)
    # commands
    for cmdname in sorted(known_commands.keys()):
        cmd = known_commands[cmdname]
        p = subparsers.add_parser(
            cmdname,
            description=cmd.description,
            help=cmd.short_description,
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="Run 'run_nwcserver -h' to see the list of global options",
        )
        for optname, default in zip(cmd.options, cmd.defaults):
            help = cmd.arg_descriptions.get(optname)
            if not help:
                print(f'undocumented argument {cmdname}::{optname}', file=sys.stderr)
            action = "store_true" if default is False else 'store'
            if action == 'store':
                type_descriptor = cmd.arg_types.get(optname)
                _type = arg_types.get(type_descriptor, str)
                p.add_argument('--' + optname, dest=optname, action=action, default=default, help=help, type=_type)
            else:
                p.add_argument('--' + optname, dest=optname, action=action, default=default, help=help)
        if cmdname == 'add_connection':
            p.add_argument('--qr', dest='qr', action='store_true', default=False,
                           help="also print the connection URI as QR code")
        add_global_options(p, suppress=True)

        for param in cmd.params:
            help = cmd.arg_descriptions.get(param)
            if not help:
                print(f'undocumented argument {cmdname}::{param}', file=sys.stderr)
            type_descriptor = cmd.arg_types.get(param)
            _type = arg_types.get(type_descriptor)
            p.add_argument(param, help=help, type=_type)
    return parser
