# All types a user would care about are made available in the top level package.
# A user should never have to import anything from sub modules.

from .exceptions import *  # noqa: F403 public API
from .resources import *  # noqa: F403 public API
from .actions import *  # noqa: F403 public API
from .clock import *  # noqa: F403 public API
from .cache import *  # noqa: F403 public API
from .source import *  # noqa: F403 public API
from .controller import *  # noqa: F403 public API
from .store import *  # noqa: F403 public API
from .autoscale import *  # noqa: F403 public API
from .reconcilers import *  # noqa: F403 public API
from .config import Settings
from .executor import ActionExecutor
from .leaderelection import LeaderElector
from .ordering import Phase, ReplicaIntent
from .manager import Manager

# Singleton manager instance.
manager = Manager()

# Easy access to start manager.
run = manager.run

# Easy access to builder decorators.
controller = manager.controller
register = manager.register
