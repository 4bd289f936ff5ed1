from __future__ import annotations

import logging
import ssl
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from imapmirror.auth import AuthContext, CredentialSource, PasswordAuth
from imapmirror.config import ClientSettings, ServerConfig
from imapmirror.errors import AuthError, IMAPError, ProtocolError, TransportError
from imapmirror.imap.session import Session
from imapmirror.imap.stream import Connector, make_ssl_context, socket_connector

logger = logging.getLogger(__name__)


@dataclass
class _Probe:
    session: Session
    preauth: bool


class SessionManager:
    """
    Registry of live sessions, one per logical server name.

    Created once by the application and passed to whatever needs
    sessions; entries are removed when a session is closed.
    """

    def __init__(
        self,
        credentials: CredentialSource,
        *,
        settings: Optional[ClientSettings] = None,
        connector: Optional[Connector] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.credentials = credentials
        self.settings = settings or ClientSettings()
        self.ssl_context = ssl_context or make_ssl_context(self.settings.ssl_verify)
        self.connector = connector or socket_connector(self.ssl_context)
        self._sessions: Dict[str, Session] = {}
        # Guards the registry only; each handshake runs under its name's lock.
        self._lock = threading.RLock()
        self._opening: Dict[str, threading.Lock] = {}

    # -----------------------
    # Registry
    # -----------------------

    def get(self, name: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(name)
            if session is not None and session.closed:
                self._sessions.pop(name, None)
                return None
            return session

    def sessions(self) -> List[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if not s.closed]

    def __len__(self) -> int:
        return len(self.sessions())

    # -----------------------
    # Open
    # -----------------------

    def _name_lock(self, name: str) -> threading.Lock:
        with self._lock:
            return self._opening.setdefault(name, threading.Lock())

    def open(self, config: ServerConfig) -> Session:
        existing = self.get(config.name)
        if existing is not None:
            return existing

        with self._name_lock(config.name):
            existing = self.get(config.name)
            if existing is not None:
                return existing

            probe = self._probe(config)
            probe = self._maybe_upgrade(config, probe)
            session = probe.session
            try:
                if not probe.preauth:
                    self._login(session)
                if session.has_capability("QRESYNC"):
                    ok, _ = session.run_command("ENABLE QRESYNC")
                    session.resync_enabled = ok
            except Exception:
                session.close()
                raise

            with self._lock:
                self._sessions[config.name] = session
            logger.info(
                f"Opened IMAP session to {config.name} ({session.config.transport}, "
                f"{'preauth' if probe.preauth else 'login'})"
            )
            return session

    def _probe(self, config: ServerConfig) -> _Probe:
        """Connect, read the greeting, upgrade `starttls` transports, and query capabilities."""
        stream = self.connector(config)
        session = Session(config=config, stream=stream, settings=self.settings)
        try:
            greeting = session.read_line()
            session.greeting = greeting.line
            word = (greeting.atom(1) or "").upper()
            if not greeting.untagged or word not in ("OK", "PREAUTH"):
                raise TransportError(f"unexpected greeting {greeting.line!r}", server=config.name,
                                     transport=config.transport)
            preauth = word == "PREAUTH"

            if config.transport == "starttls":
                ok, unit = session.run_command("STARTTLS")
                if not ok:
                    raise TransportError(f"STARTTLS refused: {unit.status} {unit.text}", server=config.name,
                                         transport=config.transport)
                session.stream.start_tls(self.ssl_context, config.address or config.name)

            self._query_capabilities(session)
            return _Probe(session=session, preauth=preauth)
        except Exception:
            session.close()
            raise

    def _query_capabilities(self, session: Session) -> None:
        unit = session.command("CAPABILITY")
        words: List[str] = []
        for reply in unit.by_keyword("CAPABILITY"):
            words.extend(str(tok) for tok in reply.tokens[2:])
        session.set_capabilities(words)

    def _maybe_upgrade(self, config: ServerConfig, probe: _Probe) -> _Probe:
        """
        A plain connection that advertises STARTTLS is replaced by a
        separately probed secured one; if that fails the plain one is kept.
        """
        if config.transport != "plain" or not probe.session.has_capability("STARTTLS"):
            return probe
        try:
            secured = self._probe(config.with_transport("starttls"))
        except (TransportError, ProtocolError) as e:
            logger.warning(f"STARTTLS upgrade for {config.name} failed, staying on plain transport: {e}")
            return probe

        self._logout_quietly(probe.session)
        logger.info(f"Upgraded connection to {config.name} with STARTTLS")
        return secured

    def _login(self, session: Session) -> None:
        config = session.config
        host = config.address or config.name
        ports = config.candidate_ports()
        filed_under = host
        creds = self.credentials.lookup(host, ports, config.user)
        if creds is None and host != config.name:
            filed_under = config.name
            creds = self.credentials.lookup(filed_under, ports, config.user)
        if creds is None:
            raise AuthError(f"No credentials for {config.name}")

        user, secret = creds
        try:
            PasswordAuth(user, secret).apply_imap(session, AuthContext(host=host, port=config.port, user=user))
        except AuthError:
            for port in ports:
                self.credentials.forget(filed_under, port)
            raise

    # -----------------------
    # Close
    # -----------------------

    def _logout_quietly(self, session: Session) -> None:
        if session.closed:
            session.close()
            return
        try:
            session.run_command("LOGOUT")
        except IMAPError as e:
            logger.debug(f"LOGOUT on {session.server} failed: {e}")
        session.close()

    def close(self, session: Session) -> None:
        with self._lock:
            if self._sessions.get(session.server) is session:
                self._sessions.pop(session.server, None)
        self._logout_quietly(session)
        logger.info(f"Closed IMAP session to {session.server}")

    def drop(self, session: Session) -> None:
        """Forget a session whose stream is dead, without talking to it."""
        with self._lock:
            if self._sessions.get(session.server) is session:
                self._sessions.pop(session.server, None)
        session.close()

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._logout_quietly(session)

    def __enter__(self) -> "SessionManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close_all()
