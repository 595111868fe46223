"""m-agent - conversational backend with approval-gated tools and persistent sessions."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("m-agent")
except PackageNotFoundError:
    __version__ = "0.1.0"

__logo__ = "◆"
__brand__ = "m-agent"
