"""
Control-plane session acquisition and release.

A session is either created for this run (explicit host, password prompt)
and closed at the end, or reused from the ambient registry and left open.
"""

import getpass
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional

from pve_lifecycle.api import ProxmoxClient
from pve_lifecycle.exceptions import NoSessionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    host: str
    client: Any
    created_by_this_run: bool = False


class SessionRegistry:
    """Process-wide list of sessions opened outside the current batch."""

    def __init__(self):
        self._sessions: List[Session] = []
        self._lock = threading.Lock()

    def register(self, session: Session):
        with self._lock:
            self._sessions.append(session)

    def current(self) -> Optional[Session]:
        with self._lock:
            return self._sessions[-1] if self._sessions else None

    def clear(self):
        with self._lock:
            self._sessions.clear()


_ambient = SessionRegistry()


def register_ambient_session(session: Session):
    _ambient.register(session)


def get_ambient_session() -> Optional[Session]:
    return _ambient.current()


def clear_ambient_sessions():
    _ambient.clear()


def prompt_password(user: str, host: str) -> str:
    return getpass.getpass(f"Password for {user}@{host}: ")


class SessionManager:
    """Acquire a session for a batch and release it when the batch ends."""

    def __init__(self, connect: Callable[..., Any] = ProxmoxClient.connect,
                 credential_provider: Callable[[str, str], str] = prompt_password,
                 registry: Optional[SessionRegistry] = None, **connect_options):
        self.connect = connect
        self.credential_provider = credential_provider
        self.registry = registry or _ambient
        self.connect_options = connect_options

    def acquire(self, host: Optional[str] = None, user: Optional[str] = None) -> Session:
        if host:
            user = user or 'root@pam'
            password = self.credential_provider(user, host)
            client = self.connect(host, user, password=password, **self.connect_options)
            logger.info("Connected to %s as %s", host, user)
            return Session(host=host, client=client, created_by_this_run=True)

        ambient = self.registry.current()
        if ambient is None:
            raise NoSessionError()
        logger.info("Reusing existing session to %s", ambient.host)
        return Session(host=ambient.host, client=ambient.client, created_by_this_run=False)

    def release(self, session: Session):
        if not session.created_by_this_run:
            return
        logger.info("Disconnecting from %s", session.host)
        session.client.disconnect()

    @contextmanager
    def scope(self, host: Optional[str] = None, user: Optional[str] = None) -> Iterator[Session]:
        session = self.acquire(host, user)
        try:
            yield session
        finally:
            self.release(session)
