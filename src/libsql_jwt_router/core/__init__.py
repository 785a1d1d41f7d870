# Core shared modules for the resolver, HTTP app and CLI
from .config import Config, setup_logging
from .auth import decode_token_unsafe, extract_bearer_token, get_token_preview

__all__ = [
    # Config
    "Config",
    "setup_logging",
    # Auth
    "decode_token_unsafe",
    "extract_bearer_token",
    "get_token_preview",
]
