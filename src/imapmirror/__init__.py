from imapmirror.config import ClientSettings, ServerConfig, load_settings
from imapmirror.info import InfoStore, MemoryInfoStore
from imapmirror.mirror import MailMirror
from imapmirror.ranges import Range

__all__ = ["MailMirror", "ServerConfig", "ClientSettings", "load_settings", "Range", "InfoStore", "MemoryInfoStore"]
