"""
Tool registry: turns stored function records into the `tools` array of an
OpenAI chat request, and indexes them by name for mid-stream lookup.
"""

import json
import logging

from chatrelay.storage.models import Function

logger = logging.getLogger(__name__)


def build_tool_specs(functions: list[Function]) -> list[dict]:
    """OpenAI tool definitions. Functions with an undecodable schema are skipped."""
    tools = []
    for fn in functions:
        try:
            parameters = json.loads(fn.parameters or "{}")
        except ValueError as e:
            logger.warning("Skipping tool '%s': bad parameter schema (%s)", fn.name, e)
            continue
        if not isinstance(parameters, dict):
            logger.warning("Skipping tool '%s': parameter schema is not an object", fn.name)
            continue
        if parameters.get("required") is None:
            parameters["required"] = []
        tools.append({
            "type": "function",
            "function": {
                "name": fn.name,
                "description": fn.description,
                "parameters": parameters,
            },
        })
    return tools


class ToolRegistry:
    """The enabled tools offered to the model for one turn."""

    def __init__(self, functions: list[Function] | None = None):
        self.functions: dict[str, Function] = {}
        for fn in functions or []:
            if fn.enabled:
                self.functions[fn.name] = fn

    @classmethod
    def load(cls, store, ids: list[int]) -> "ToolRegistry":
        if not ids:
            return cls()
        return cls(store.get_functions(ids, enabled_only=True))

    def get(self, name: str) -> Function | None:
        return self.functions.get(name)

    def list_tools(self) -> list[str]:
        return list(self.functions.keys())

    def specs(self) -> list[dict]:
        return build_tool_specs(list(self.functions.values()))

    def __len__(self) -> int:
        return len(self.functions)
