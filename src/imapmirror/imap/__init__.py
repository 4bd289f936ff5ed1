from imapmirror.imap.manager import SessionManager
from imapmirror.imap.parser import ResponseUnit, parse_reply
from imapmirror.imap.session import Session

__all__ = ["SessionManager", "Session", "ResponseUnit", "parse_reply"]
