"""
Authenticator — strategy registry plus session (de)serialisation.

A strategy verifies credentials and returns the user or a reason for
refusal. After a successful login only the serialised identity (the user
id) is kept in the session under SESSION_KEY; every later request
rehydrates the user through the registered deserializer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

SESSION_KEY = "auth"

Serializer = Callable[[Any], Awaitable[Any]]
Deserializer = Callable[[Any], Awaitable[Optional[Any]]]


@dataclass
class AuthResult:
    user: Optional[Any] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.user is not None


class Strategy(ABC):
    """A way of turning request credentials into a user."""

    name: str = ""

    @abstractmethod
    async def verify(self, request: Request, credentials: Dict[str, Any]) -> AuthResult:
        ...


class Authenticator:
    """Registry of strategies and the session identity hooks."""

    def __init__(self) -> None:
        self._strategies: Dict[str, Strategy] = {}
        self._serializer: Optional[Serializer] = None
        self._deserializer: Optional[Deserializer] = None

    def use(self, strategy: Strategy) -> "Authenticator":
        if not strategy.name:
            raise ValueError("Strategy must define a name")
        self._strategies[strategy.name] = strategy
        return self

    def serializer(self, func: Serializer) -> Serializer:
        """Register how a user is reduced to the value kept in the session."""
        self._serializer = func
        return func

    def deserializer(self, func: Deserializer) -> Deserializer:
        """Register how the session value is turned back into a user."""
        self._deserializer = func
        return func

    async def serialize(self, user: Any) -> Any:
        if self._serializer is None:
            raise RuntimeError("No user serializer registered")
        return await self._serializer(user)

    async def deserialize(self, key: Any) -> Optional[Any]:
        if self._deserializer is None:
            raise RuntimeError("No user deserializer registered")
        return await self._deserializer(key)

    async def authenticate(
        self,
        name: str,
        request: Request,
        credentials: Optional[Dict[str, Any]] = None,
    ) -> AuthResult:
        strategy = self._strategies.get(name)
        if strategy is None:
            raise KeyError(f"Unknown authentication strategy: {name}")
        if credentials is None:
            credentials = dict(getattr(request.state, "body", None) or {})
        result = await strategy.verify(request, credentials)
        if not result.ok:
            logger.info("Authentication via %s refused: %s", name, result.message)
        return result

    async def login(self, request: Request, user: Any) -> None:
        session = request.state.session
        session.regenerate()
        session[SESSION_KEY] = {"user": await self.serialize(user)}
        request.state.user = user

    async def logout(self, request: Request) -> None:
        request.state.session.pop(SESSION_KEY, None)
        request.state.user = None
