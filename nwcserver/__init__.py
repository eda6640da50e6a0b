from .version import NWCSERVER_VERSION
from .simple_config import SimpleConfig
from .connection import NWCConnection, BudgetRenewal
from .registry import ConnectionRegistry
from .subscriptions import SubscriptionManager
from .dispatcher import RequestDispatcher
from .backend import WalletBackend, BackendError
from .service import NWCService
from .logging import get_logger


__version__ = NWCSERVER_VERSION

_logger = get_logger(__name__)


# Ensure that asserts are enabled. For sanity and paranoia, we require this.
# Code *should not rely* on asserts being enabled. In particular, safety and security checks should
# always explicitly raise exceptions. However, this rule is mistakenly broken occasionally...
try:
    assert False
except AssertionError:
    pass
else:
    raise ImportError("Running with asserts disabled. Refusing to continue. Exiting...")
