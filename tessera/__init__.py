# flake8: noqa: F401, F403
from .archetype import *
from .borrow import *
from .bundle import *
from .commands import *
from .config import *
from .entity import *
from .errors import *
from .query import *
from .registry import *
from .world import *

# flake8: enable

__version__ = "0.1.0"
