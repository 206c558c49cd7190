"""Active Directory backend built on ldap3."""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from ldap3 import NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ..config import ActiveDirectoryConfig
from .models import INVALID_CREDENTIALS, BackendError, DirectoryGroup, ErrorListener

logger = structlog.get_logger()

T = TypeVar("T")

# Transitive membership lookup supported by Active Directory
IN_CHAIN = "1.2.840.113556.1.4.1941"
# success, sizeLimitExceeded
_SEARCH_OK = (0, 4)


def _describe(result: dict[str, Any] | None) -> str:
    result = result or {}
    return str(result.get("description") or result.get("result") or "unknown")


class LdapDirectoryBackend:
    """Directory operations against Active Directory.

    One ldap3 Server is kept per backend and reused by every call. Calls run
    in worker threads since ldap3 connections are blocking. Errors raised by
    ldap3, and credential rejections during binds, are published to the
    registered error listeners before being reported to the caller.
    """

    def __init__(self, config: ActiveDirectoryConfig, server: Server | None = None):
        self.config = config
        self.server = server or Server(
            config.url, connect_timeout=config.connect_timeout, get_info=NONE
        )
        self._listeners: list[ErrorListener] = []

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._listeners.append(listener)

    def _publish(self, error: BackendError) -> None:
        for listener in list(self._listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(
                    "Directory error listener failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except LDAPException as e:
            error = BackendError(str(e) or type(e).__name__, code=type(e).__name__)
            self._publish(error)
            raise error from e

    def _connection(self, user: str, password: str) -> Connection:
        return Connection(
            self.server,
            user=user,
            password=password,
            auto_bind=False,
            receive_timeout=self.config.receive_timeout,
            raise_exceptions=False,
        )

    def _service_connection(self) -> Connection:
        conn = self._connection(self.config.bind_principal, self.config.bind_password)
        if not conn.bind():
            description = _describe(conn.result)
            conn.unbind()
            raise BackendError(f"Service bind failed: {description}", code=description)
        return conn

    def _search(
        self, conn: Connection, search_filter: str, attributes: list[str], **kwargs: Any
    ) -> list[Any]:
        conn.search(
            search_base=self.config.base_dn,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=attributes,
            **kwargs,
        )
        result = conn.result or {}
        if result.get("result") not in _SEARCH_OK:
            description = _describe(result)
            raise BackendError(f"Directory search failed: {description}", code=description)
        return list(conn.entries)

    def _find_user_dn(self, conn: Connection, user: str) -> str | None:
        attribute = "userPrincipalName" if "@" in user else "sAMAccountName"
        entries = self._search(
            conn,
            f"(&(objectClass=user)({attribute}={escape_filter_chars(user)}))",
            ["distinguishedName"],
            size_limit=2,
        )
        if not entries:
            return None
        return str(entries[0].entry_dn)

    def _user_exists(self, user: str) -> bool:
        conn = self._service_connection()
        try:
            return self._find_user_dn(conn, user) is not None
        finally:
            conn.unbind()

    def _bind_as(self, principal: str, password: str) -> tuple[bool, dict[str, Any]]:
        conn = self._connection(principal, password)
        try:
            return bool(conn.bind()), dict(conn.result or {})
        finally:
            conn.unbind()

    def _group_membership(self, user: str) -> list[DirectoryGroup]:
        conn = self._service_connection()
        try:
            dn = self._find_user_dn(conn, user)
            if dn is None:
                raise BackendError(f"User {user} not found", code="noSuchObject")

            member = f"member:{IN_CHAIN}:" if self.config.nested_groups else "member"
            entries = self._search(
                conn,
                f"(&(objectClass=group)({member}={escape_filter_chars(dn)}))",
                ["cn"],
            )
            return [
                DirectoryGroup(common_name=str(entry.cn), dn=str(entry.entry_dn))
                for entry in entries
            ]
        finally:
            conn.unbind()

    async def user_exists(self, user: str) -> bool:
        """Check whether the directory knows user."""
        exists = await self._run(self._user_exists, user)
        logger.debug("Directory existence check", username=user, exists=exists)
        return exists

    async def authenticate(self, principal: str, password: str) -> bool:
        """Bind as principal; False when the directory rejects the password."""
        if not password:
            # An empty password would be an unauthenticated bind
            return False

        bound, result = await self._run(self._bind_as, principal, password)
        if bound:
            return True

        description = _describe(result)
        error = BackendError(f"Bind rejected: {description}", code=description)
        self._publish(error)
        if description == INVALID_CREDENTIALS:
            return False
        raise error

    async def get_group_membership(self, user: str) -> list[DirectoryGroup]:
        """Groups user belongs to, nested ones included when configured."""
        return await self._run(self._group_membership, user)
