from .remote_jenkins import *  # noqa:F401,F403
from .remote_jenkins import __version__  # noqa:F401
