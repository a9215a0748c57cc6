from .config import Config
from .downloader import NFeDownloader
from .identity import SigningIdentity, load_identity
from .store import JsonStore
from .sync import SyncOrchestrator
from .transport import Transport

__all__ = [
    "Config",
    "NFeDownloader",
    "JsonStore",
    "SigningIdentity",
    "SyncOrchestrator",
    "Transport",
    "load_identity",
]
