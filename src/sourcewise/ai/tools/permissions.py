"""Persisted per-tool authorization policy.

The whole policy lives in a single ``settings`` row. Every mutation loads the
row, edits a private copy and writes the full object back, so readers never
observe a half-applied change. Session approvals are partitioned by
:class:`SessionContext` so concurrent notebooks do not share grants.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Literal, Mapping

from ...services.storage import SETTINGS, Store

LOGGER = logging.getLogger(__name__)

CONFIG_KEY = "toolPermissions"
DEFAULT_SESSION_ID = "default"

ApprovalScope = Literal["once", "session", "forever"]

SOURCE_TOOLS: tuple[str, ...] = ("listSources", "readSource", "findRelevantSources")
BROWSER_TOOLS: tuple[str, ...] = ("listWindows", "listTabs", "listTabGroups", "readPageContent")


@dataclass(slots=True, frozen=True)
class SessionContext:
    """Explicit session identity used to scope ``session`` approvals."""

    session_id: str = DEFAULT_SESSION_ID


DEFAULT_SESSION = SessionContext()


@dataclass(slots=True, frozen=True)
class ToolPermission:
    """Authorization policy for one named tool."""

    tool_name: str
    visible: bool = True
    requires_approval: bool = True
    auto_approved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "visible": self.visible,
            "requires_approval": self.requires_approval,
            "auto_approved": self.auto_approved,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolPermission":
        return cls(
            tool_name=str(payload["tool_name"]),
            visible=bool(payload.get("visible", True)),
            requires_approval=bool(payload.get("requires_approval", True)),
            auto_approved=bool(payload.get("auto_approved", False)),
        )


@dataclass(slots=True)
class ToolPermissionsConfig:
    """Aggregate policy snapshot."""

    permissions: Dict[str, ToolPermission] = field(default_factory=dict)
    session_approvals: Dict[str, set[str]] = field(default_factory=dict)
    last_modified: int = 0

    def session_set(self, session: SessionContext) -> set[str]:
        return self.session_approvals.setdefault(session.session_id, set())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": CONFIG_KEY,
            "permissions": {name: perm.to_dict() for name, perm in self.permissions.items()},
            "session_approvals": {
                session_id: sorted(names) for session_id, names in self.session_approvals.items() if names
            },
            "last_modified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolPermissionsConfig":
        permissions = {
            str(name): ToolPermission.from_dict({"tool_name": name, **dict(item)})
            for name, item in (payload.get("permissions") or {}).items()
        }
        sessions = {
            str(session_id): set(names or ())
            for session_id, names in (payload.get("session_approvals") or {}).items()
        }
        return cls(
            permissions=permissions,
            session_approvals=sessions,
            last_modified=int(payload.get("last_modified") or 0),
        )


def default_permissions_config() -> ToolPermissionsConfig:
    """Built-in policy: source tools run freely, browser tools ask first."""

    permissions: Dict[str, ToolPermission] = {}
    for name in SOURCE_TOOLS:
        permissions[name] = ToolPermission(name, visible=True, requires_approval=False, auto_approved=True)
    for name in BROWSER_TOOLS:
        permissions[name] = ToolPermission(name, visible=True, requires_approval=True, auto_approved=False)
    return ToolPermissionsConfig(permissions=permissions, last_modified=_now_ms())


def _now_ms() -> int:
    return int(time.time() * 1000)


class ToolPermissionRegistry:
    """Read-modify-write access to the persisted tool policy."""

    def __init__(self, store: Store) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def get_config(self) -> ToolPermissionsConfig:
        record = self._store.get(SETTINGS, CONFIG_KEY)
        if record is None:
            return default_permissions_config()
        return ToolPermissionsConfig.from_dict(record)

    def save_config(self, config: ToolPermissionsConfig) -> None:
        config.last_modified = _now_ms()
        self._store.put(SETTINGS, config.to_dict())

    def reset(self) -> None:
        self._store.delete(SETTINGS, CONFIG_KEY)
        LOGGER.info("Tool permissions reset to defaults")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_permission(self, tool_name: str) -> ToolPermission | None:
        return self.get_config().permissions.get(tool_name)

    def is_visible(self, tool_name: str) -> bool:
        permission = self.get_permission(tool_name)
        return permission is not None and permission.visible

    def is_auto_approved(self, tool_name: str, session: SessionContext = DEFAULT_SESSION) -> bool:
        config = self.get_config()
        permission = config.permissions.get(tool_name)
        if permission is None or not permission.visible:
            return False
        if permission.auto_approved:
            return True
        return tool_name in config.session_approvals.get(session.session_id, ())

    def requires_approval(self, tool_name: str) -> bool:
        permission = self.get_permission(tool_name)
        if permission is None or not permission.visible:
            return False
        return permission.requires_approval and not permission.auto_approved

    def list_visible_tool_names(self) -> list[str]:
        return [name for name, permission in self.get_config().permissions.items() if permission.visible]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_permission(
        self,
        tool_name: str,
        *,
        visible: bool | None = None,
        requires_approval: bool | None = None,
        auto_approved: bool | None = None,
    ) -> ToolPermission:
        config = self.get_config()
        current = config.permissions.get(tool_name) or ToolPermission(tool_name)
        updates: Dict[str, bool] = {}
        if visible is not None:
            updates["visible"] = visible
        if requires_approval is not None:
            updates["requires_approval"] = requires_approval
        if auto_approved is not None:
            updates["auto_approved"] = auto_approved
        permission = replace(current, **updates)
        config.permissions[tool_name] = permission
        self.save_config(config)
        LOGGER.debug("Updated permission for %s: %s", tool_name, permission)
        return permission

    def add_approval(
        self,
        tool_name: str,
        scope: ApprovalScope,
        session: SessionContext = DEFAULT_SESSION,
    ) -> None:
        """Apply the scope of a granted approval to future calls of ``tool_name``."""

        if scope == "once":
            return
        config = self.get_config()
        if scope == "session":
            config.session_set(session).add(tool_name)
        elif scope == "forever":
            permission = config.permissions.get(tool_name)
            if permission is None:
                LOGGER.debug("Ignoring permanent approval for unknown tool %s", tool_name)
                return
            config.permissions[tool_name] = replace(permission, auto_approved=True)
        else:
            raise ValueError(f"Unknown approval scope: {scope!r}")
        self.save_config(config)
        LOGGER.debug("Approved %s with scope %s (session=%s)", tool_name, scope, session.session_id)

    def clear_session_approvals(self, session: SessionContext = DEFAULT_SESSION) -> None:
        config = self.get_config()
        if not config.session_approvals.get(session.session_id):
            return
        config.session_approvals.pop(session.session_id, None)
        self.save_config(config)


__all__ = [
    "ApprovalScope",
    "BROWSER_TOOLS",
    "DEFAULT_SESSION",
    "DEFAULT_SESSION_ID",
    "SOURCE_TOOLS",
    "SessionContext",
    "ToolPermission",
    "ToolPermissionRegistry",
    "ToolPermissionsConfig",
    "default_permissions_config",
]
