from __future__ import annotations

from dataclasses import dataclass

from hierarchy_authz.token.principal import Principal


@dataclass(frozen=True)
class RequestAuthContext:
    """
    Per-request authorization outcome, attached to ``request.state.authz``.

    ``degraded`` is True when permission checks were skipped because the
    evaluation subsystem was unavailable and fallback to auth-only applied.
    """

    principal: Principal
    granted: frozenset[str]
    degraded: bool = False
