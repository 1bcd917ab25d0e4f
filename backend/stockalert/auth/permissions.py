"""Settings guard — the single authorization policy for the alert engine.

Design:
  - Every actor may read alerts, acknowledge them and trigger a normal
    (debounced) evaluation run.
  - Only privileged roles (``settings.privileged_roles``, by default
    ``superadmin`` and ``admin``) may replace thresholds, change the
    notification / auto-acknowledge policy, force a run past the debounce
    window, or trigger cleanup by hand.

Permission naming: `<resource>.<action>`
"""

from __future__ import annotations

from typing import Iterable

from stockalert.config import settings
from stockalert.middleware.exceptions import PermissionDeniedError


# ── All known permissions ───────────────────────────────────

BASE_PERMISSIONS: set[str] = {
    "alerts.read",
    "alerts.acknowledge",
    "alerts.generate",
}

PRIVILEGED_PERMISSIONS: set[str] = {
    "thresholds.replace",        # ThresholdRegistry.replace
    "notifications.update",      # email / inApp / sound flags
    "auto_acknowledge.update",   # cleanup policy
    "evaluation.force",          # bypass the debounce window
    "alerts.cleanup",            # manual age-based cleanup
}

ALL_PERMISSIONS: set[str] = BASE_PERMISSIONS | PRIVILEGED_PERMISSIONS


# ── Resolution ──────────────────────────────────────────────

def resolve_permissions(role: str, privileged_roles: Iterable[str]) -> list[str]:
    """Compute the effective permissions of a role, sorted for stable output."""
    if role in set(privileged_roles):
        return sorted(ALL_PERMISSIONS)
    return sorted(BASE_PERMISSIONS)


def has_permission(user_permissions: list[str] | set[str], required: str) -> bool:
    """Check whether a permission set satisfies a requirement."""
    return required in user_permissions


class SettingsGuard:
    def __init__(self, privileged_roles: Iterable[str] | None = None):
        if privileged_roles is None:
            privileged_roles = settings.privileged_role_set
        self.privileged_roles = frozenset(privileged_roles)

    def authorize(self, actor_role: str | None, action: str) -> bool:
        if action not in ALL_PERMISSIONS or not actor_role:
            return False
        return has_permission(
            resolve_permissions(actor_role, self.privileged_roles), action
        )

    def require(self, actor_role: str | None, action: str) -> None:
        """Raise PermissionDeniedError unless ``actor_role`` may perform ``action``."""
        if not self.authorize(actor_role, action):
            raise PermissionDeniedError(
                f"Role {actor_role or 'anonymous'!r} may not perform {action}"
            )
