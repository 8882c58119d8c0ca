"""Server-side tools the model can call mid-stream."""
from chatrelay.tools.invoker import ToolInvoker
from chatrelay.tools.registry import ToolRegistry, build_tool_specs

__all__ = ["ToolInvoker", "ToolRegistry", "build_tool_specs"]
