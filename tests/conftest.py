from __future__ import annotations

import pytest

from imapmirror.auth import StaticCredentials
from imapmirror.config import ClientSettings, ServerConfig
from imapmirror.imap.manager import SessionManager
from imapmirror.imap.session import Session
from imapmirror.info import MemoryInfoStore
from tests.fake_imap_server import FakeBackend, FakeIMAPServer

HOST = "mail.example.com"


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(record_commands=True)


@pytest.fixture
def config() -> ServerConfig:
    return ServerConfig(name=HOST, transport="ssl")


@pytest.fixture
def credentials() -> StaticCredentials:
    creds = StaticCredentials()
    creds.add(HOST, "993", "alice", "secret")
    creds.add(HOST, "143", "alice", "secret")
    return creds


@pytest.fixture
def manager(backend: FakeBackend, credentials: StaticCredentials, settings: ClientSettings) -> SessionManager:
    return SessionManager(credentials, settings=settings, connector=backend.connector)


@pytest.fixture
def session(manager: SessionManager, config: ServerConfig) -> Session:
    return manager.open(config)


@pytest.fixture
def server(session: Session) -> FakeIMAPServer:
    """The fake connection behind `session`."""
    return session.stream


@pytest.fixture
def store() -> MemoryInfoStore:
    return MemoryInfoStore()


def raw_session(backend: FakeBackend, config: ServerConfig, settings: ClientSettings) -> Session:
    """A session on a fresh connection with only the greeting consumed."""
    s = Session(config=config, stream=backend.connector(config), settings=settings)
    s.read_line()
    return s
