"""
Group resolution for principals.

StaticIdentityProvider  uses the principal's own groups (plus optional static extras).
HttpIdentityProvider    asks an external directory:
                          GET {base_url}/principals/{name}/groups
                          → {"groups": ["team-a", ...]}  or  ["team-a", ...]

Both always include the implicit system:authenticated group. The HTTP provider
never fails open: timeouts raise IdentityTimeoutError, every other failure
raises IdentityUnavailableError.
"""

from typing import Optional, Protocol
from urllib.parse import quote

import httpx
import structlog

from nsguard.services.shared.errors import IdentityTimeoutError, IdentityUnavailableError
from nsguard.services.shared.models import Principal

logger = structlog.get_logger()


class IdentityProvider(Protocol):
    def resolve_groups(self, principal: Principal, timeout: Optional[float] = None) -> frozenset[str]:
        ...


class StaticIdentityProvider:
    def __init__(self, extra_groups: Optional[dict[str, set[str]]] = None):
        self._extra = {name: frozenset(groups) for name, groups in (extra_groups or {}).items()}

    def resolve_groups(self, principal: Principal, timeout: Optional[float] = None) -> frozenset[str]:
        return principal.effective_groups() | self._extra.get(principal.name, frozenset())


class HttpIdentityProvider:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 2.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._timeout = timeout_seconds
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout_seconds, transport=transport)

    def close(self) -> None:
        self._client.close()

    def resolve_groups(self, principal: Principal, timeout: Optional[float] = None) -> frozenset[str]:
        """timeout is the caller's remaining budget; the effective timeout is the tighter of the two."""
        effective = self._timeout if timeout is None else min(self._timeout, timeout)
        if effective <= 0:
            raise IdentityTimeoutError(f"no time left to resolve groups for '{principal.name}'")

        path = f"/principals/{quote(principal.name, safe='')}/groups"
        try:
            r = self._client.get(path, timeout=effective)
            r.raise_for_status()
            payload = r.json()
        except httpx.TimeoutException as exc:
            logger.warning("identity_lookup_timeout", principal=principal.name, timeout=effective)
            raise IdentityTimeoutError(
                f"identity provider timed out after {effective:.2f}s for '{principal.name}'"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("identity_lookup_failed", principal=principal.name, error=str(exc))
            raise IdentityUnavailableError(f"identity provider unavailable: {exc}") from exc

        groups = payload.get("groups") if isinstance(payload, dict) else payload
        if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
            raise IdentityUnavailableError(f"identity provider returned malformed groups for '{principal.name}'")
        return principal.effective_groups() | frozenset(groups)
