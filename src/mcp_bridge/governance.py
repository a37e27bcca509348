"""Caller identity and the checks that decide which tools a caller can see."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple, Union

from starlette.authentication import AuthCredentials, AuthenticationBackend, BaseUser, UnauthenticatedUser
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.requests import HTTPConnection, Request

from .models import ToolDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    user: BaseUser = field(default_factory=UnauthenticatedUser)
    roles: FrozenSet[str] = frozenset()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user.is_authenticated)

    @property
    def display_name(self) -> Optional[str]:
        return self.user.display_name if self.is_authenticated else None

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(role in self.roles for role in roles)


ANONYMOUS = CallerIdentity()

IdentityProvider = Callable[[Request], Awaitable[CallerIdentity]]
PolicyCheck = Callable[[CallerIdentity, Optional[Request]], Union[bool, Awaitable[bool]]]
VisibilityFilter = Callable[[str, Optional[Request]], bool]


async def identity_from_scope(request: Request) -> CallerIdentity:
    """Identity established by the host's AuthenticationMiddleware.

    Roles are the granted `AuthCredentials.scopes`. A request without an
    authenticated user is anonymous.
    """
    user = request.scope.get("user")
    if not isinstance(user, BaseUser) or not user.is_authenticated:
        return ANONYMOUS
    credentials = request.scope.get("auth")
    scopes = getattr(credentials, "scopes", None) or ()
    return CallerIdentity(user=user, roles=frozenset(scopes))


MCP_SCOPE_EXTENSION = "mcp"


def attach_identity(scope: Any, identity: CallerIdentity) -> None:
    """Record the MCP caller on a synthetic scope under `extensions["mcp"]`.

    Authentication middleware in the host re-runs on the synthetic request and
    replaces `scope["user"]`; the extension entry survives it.
    """
    extensions = scope.setdefault("extensions", {})
    extensions.setdefault(MCP_SCOPE_EXTENSION, {})["identity"] = identity
    scope["user"] = identity.user
    scope["auth"] = AuthCredentials(sorted(identity.roles))


def attached_identity(scope: Any) -> Optional[CallerIdentity]:
    extension = (scope.get("extensions") or {}).get(MCP_SCOPE_EXTENSION) or {}
    identity = extension.get("identity")
    return identity if isinstance(identity, CallerIdentity) else None


class CallerIdentityBackend(AuthenticationBackend):
    """Authentication backend that honours the identity of an MCP caller.

    Wraps the host's own backend. Requests dispatched by the bridge for an
    authenticated caller resolve to that caller; every other request is
    authenticated by the wrapped backend as before.
    """

    def __init__(self, backend: AuthenticationBackend) -> None:
        self.backend = backend

    async def authenticate(self, conn: HTTPConnection) -> Optional[Tuple[AuthCredentials, BaseUser]]:
        identity = attached_identity(conn.scope)
        if identity is not None and identity.is_authenticated:
            return AuthCredentials(sorted(identity.roles)), identity.user
        return await self.backend.authenticate(conn)


def wrap_authentication_backends(app: Any) -> int:
    """Wrap the backend of every AuthenticationMiddleware registered on `app`.

    Only middleware added before this call is seen, and only while the
    middleware stack has not been built yet. Returns the number wrapped.
    """
    if getattr(app, "middleware_stack", None) is not None:
        logger.warning("Middleware stack already built; MCP caller identity will not reach host routes")
        return 0

    wrapped = 0
    for middleware in getattr(app, "user_middleware", []):
        if not (isinstance(middleware.cls, type) and issubclass(middleware.cls, AuthenticationMiddleware)):
            continue
        backend = middleware.kwargs.get("backend")
        if backend is None and middleware.args:
            backend = middleware.args[0]
            middleware.args = (CallerIdentityBackend(backend),) + tuple(middleware.args[1:])
            wrapped += 1
        elif backend is not None and not isinstance(backend, CallerIdentityBackend):
            middleware.kwargs["backend"] = CallerIdentityBackend(backend)
            wrapped += 1
    return wrapped


class GovernanceCheck:
    name = "check"

    async def allows(
        self, tool: ToolDescriptor, identity: CallerIdentity, request: Optional[Request]
    ) -> bool:
        raise NotImplementedError


class RoleRequirement(GovernanceCheck):
    name = "roles"

    async def allows(
        self, tool: ToolDescriptor, identity: CallerIdentity, request: Optional[Request]
    ) -> bool:
        if not tool.required_roles:
            return True
        return identity.is_authenticated and identity.has_any_role(tool.required_roles)


class PolicyRequirement(GovernanceCheck):
    name = "policy"

    def __init__(self, policies: Optional[Mapping[str, PolicyCheck]] = None) -> None:
        self.policies = dict(policies or {})

    async def allows(
        self, tool: ToolDescriptor, identity: CallerIdentity, request: Optional[Request]
    ) -> bool:
        if not tool.required_policy:
            return True
        if not identity.is_authenticated:
            return False
        policy = self.policies.get(tool.required_policy)
        if policy is None:
            logger.warning(
                "Tool %s requires unknown policy '%s'; hiding it",
                tool.name,
                tool.required_policy,
            )
            return False
        outcome = policy(identity, request)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return bool(outcome)


class VisibilityRequirement(GovernanceCheck):
    name = "visibility"

    def __init__(self, visibility_filter: VisibilityFilter) -> None:
        self.visibility_filter = visibility_filter

    async def allows(
        self, tool: ToolDescriptor, identity: CallerIdentity, request: Optional[Request]
    ) -> bool:
        return bool(self.visibility_filter(tool.name, request))


class GovernanceChain:
    """Ordered checks; a tool is visible only when every check allows it."""

    def __init__(self, checks: Sequence[GovernanceCheck]) -> None:
        self.checks = list(checks)

    @classmethod
    def default(
        cls,
        policies: Optional[Mapping[str, PolicyCheck]] = None,
        visibility_filter: Optional[VisibilityFilter] = None,
    ) -> "GovernanceChain":
        checks: list[GovernanceCheck] = [RoleRequirement(), PolicyRequirement(policies)]
        if visibility_filter is not None:
            checks.append(VisibilityRequirement(visibility_filter))
        return cls(checks)

    async def is_visible(
        self,
        tool: ToolDescriptor,
        identity: CallerIdentity,
        request: Optional[Request] = None,
    ) -> bool:
        for check in self.checks:
            if not await check.allows(tool, identity, request):
                logger.debug("Tool %s hidden by %s check", tool.name, check.name)
                return False
        return True
