"""Explicit session context.

Broker/customer identifiers, the auth token and the user's role are
set on login and cleared on logout. Components receive the context at
construction and read it at call time, so a logout takes effect for
every component at once.
"""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Optional

import structlog

from positiondesk.exceptions import SessionError
from positiondesk.schemas.enums import UserRole

logger = structlog.get_logger()


@dataclass(frozen=True)
class SessionInfo:
    """Identity of the logged-in user and the account being traded."""
    broker_id: str
    customer_id: str
    auth_token: str = ""
    role: UserRole = UserRole.CUSTOMER

    @property
    def is_privileged(self) -> bool:
        return self.role == UserRole.BROKER


class SessionContext:
    """Holds the active SessionInfo for the lifetime of a login."""

    def __init__(self, info: Optional[SessionInfo] = None):
        self._lock = threading.Lock()
        self._info = info

    def login(
        self,
        broker_id: str,
        customer_id: str,
        *,
        auth_token: str = "",
        role: UserRole | str = UserRole.CUSTOMER,
    ) -> SessionInfo:
        if not broker_id or not customer_id:
            raise SessionError("broker_id and customer_id are required to log in")
        info = SessionInfo(
            broker_id=broker_id,
            customer_id=customer_id,
            auth_token=auth_token,
            role=UserRole(role),
        )
        with self._lock:
            self._info = info
        logger.info(
            "Session started",
            broker_id=broker_id,
            customer_id=customer_id,
            role=info.role.value,
        )
        return info

    def logout(self) -> None:
        with self._lock:
            had_session = self._info is not None
            self._info = None
        if had_session:
            logger.info("Session cleared")

    @property
    def active(self) -> bool:
        return self._info is not None

    @property
    def info(self) -> Optional[SessionInfo]:
        return self._info

    def require(self) -> SessionInfo:
        """Return the active session or raise SessionError."""
        info = self._info
        if info is None:
            raise SessionError("No active session; log in first")
        return info

    @classmethod
    def from_env(cls) -> SessionContext:
        """Session from POSITIONDESK_BROKER_ID / _CUSTOMER_ID / _TOKEN / _ROLE.

        Returns an inactive context when the identifiers are not set.
        """
        context = cls()
        broker_id = os.environ.get("POSITIONDESK_BROKER_ID", "")
        customer_id = os.environ.get("POSITIONDESK_CUSTOMER_ID", "")
        if broker_id and customer_id:
            context.login(
                broker_id,
                customer_id,
                auth_token=os.environ.get("POSITIONDESK_TOKEN", ""),
                role=os.environ.get("POSITIONDESK_ROLE", UserRole.CUSTOMER.value).lower(),
            )
        return context
