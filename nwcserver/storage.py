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
import asyncio
import os
import stat
import threading
from abc import ABC, abstractmethod
from typing import Optional, Dict

from .logging import Logger
from .util import os_chmod, make_dir


class StorageError(Exception):
    pass


class KeyValueStore(ABC):
    """Blob store with key-value semantics.

    Values are strings (serialized JSON). They are always read and written
    in full, there is no incremental patching.
    """

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        pass


class InMemoryKeyValueStore(KeyValueStore):

    def __init__(self, items: Optional[Dict[str, str]] = None):
        self.items = dict(items or {})  # type: Dict[str, str]

    async def get_item(self, key):
        return self.items.get(key)

    async def set_item(self, key, value):
        assert isinstance(value, str), type(value)
        self.items[key] = value

    async def remove_item(self, key):
        self.items.pop(key, None)


class FileKeyValueStore(KeyValueStore, Logger):
    """One file per key in a private directory.

    Blocking file I/O is run in the default executor so that the event loop
    keeps serving other connections while we write.
    """

    def __init__(self, path: str):
        Logger.__init__(self)
        self.path = os.path.realpath(path)
        make_dir(self.path, allow_symlink=False)
        self.lock = threading.Lock()

    def diagnostic_name(self):
        return os.path.basename(self.path)

    def _item_path(self, key: str) -> str:
        if not key or os.sep in key or key.startswith('.'):
            raise ValueError(f"invalid storage key: {key!r}")
        return os.path.join(self.path, key + '.json')

    def _read(self, key: str) -> Optional[str]:
        path = self._item_path(key)
        try:
            with open(path, "r", encoding='utf-8') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"cannot read {path}: {e!r}") from e

    def _write(self, key: str, data: str) -> None:
        path = self._item_path(key)
        temp_path = "%s.tmp.%s" % (path, os.getpid())
        with self.lock:
            try:
                with open(temp_path, "wb") as f:
                    os_chmod(temp_path, stat.S_IREAD | stat.S_IWRITE)  # set restrictive perms *before* we write data
                    f.write(data.encode("utf-8"))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, path)
            except OSError as e:
                raise StorageError(f"cannot write {path}: {e!r}") from e
        self.logger.debug(f"saved {key}")

    def _remove(self, key: str) -> None:
        path = self._item_path(key)
        with self.lock:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(f"cannot remove {path}: {e!r}") from e

    async def get_item(self, key):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, key)

    async def set_item(self, key, value):
        assert isinstance(value, str), type(value)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, key, value)

    async def remove_item(self, key):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._remove, key)
