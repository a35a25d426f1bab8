"""threadline - WhatsApp bridge for stateful assistant threads."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("threadline")
except PackageNotFoundError:
    __version__ = "0.1.0"

__logo__ = "🧵"
__brand__ = "threadline"
