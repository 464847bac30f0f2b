"""Google Tag Manager tools over the Model Context Protocol."""
from .config import SERVER_NAME, SERVER_VERSION

__version__ = SERVER_VERSION
__all__ = ["SERVER_NAME", "SERVER_VERSION", "__version__"]
