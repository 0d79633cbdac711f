"""Tool gateway package exports."""

from .executor import ToolExecutor
from .server import build_executor, create_app, handle_rpc
from .state import GatewayState

__all__ = ["ToolExecutor", "GatewayState", "build_executor", "create_app", "handle_rpc"]
