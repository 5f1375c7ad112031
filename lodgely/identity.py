# Identity/session collaborator: who the current viewer is, and a way to hear when that changes.
# Components receive an IdentityProvider at construction instead of reading global session state.
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from .errors import AuthorizationError

logger = logging.getLogger("lodgely.identity")

AuthListener = Callable[[Optional["Viewer"]], None]


@dataclass(frozen=True)
class Viewer:
    id: int
    role: str = "client"


class IdentityProvider(Protocol):
    def current_user(self) -> Optional[Viewer]: ...

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]: ...


class SessionIdentity:
    """
    In-memory identity provider.

    The HTTP layer builds one per authenticated request from the bearer token;
    tests use it directly and call sign_in()/sign_out() to simulate session changes.
    """

    def __init__(self, viewer: Optional[Viewer] = None) -> None:
        self._viewer = viewer
        self._listeners: List[AuthListener] = []

    def current_user(self) -> Optional[Viewer]:
        return self._viewer

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def sign_in(self, viewer: Viewer) -> None:
        self._set(viewer)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, viewer: Optional[Viewer]) -> None:
        if viewer == self._viewer:
            return
        self._viewer = viewer
        for callback in list(self._listeners):
            try:
                callback(viewer)
            except Exception as exc:
                logger.warning("identity.listener.failed", extra={"error": repr(exc)})


def require_viewer(identity: Optional[IdentityProvider], viewer_id: Optional[int]) -> int:
    """Resolve an explicit viewer id, falling back to the identity provider."""
    if viewer_id is not None:
        return viewer_id
    viewer = identity.current_user() if identity is not None else None
    if viewer is None:
        raise AuthorizationError("No authenticated viewer")
    return viewer.id
