"""Tool policy, approvals and execution."""

from .approvals import ApprovalRequest, ApprovalRequestManager, ApprovalResponse
from .executor import RegistryToolExecutor, ToolExecutor
from .permissions import SessionContext, ToolPermission, ToolPermissionRegistry
from .tool_registry import ToolRegistry

__all__ = [
    "ApprovalRequest",
    "ApprovalRequestManager",
    "ApprovalResponse",
    "RegistryToolExecutor",
    "SessionContext",
    "ToolExecutor",
    "ToolPermission",
    "ToolPermissionRegistry",
    "ToolRegistry",
]
