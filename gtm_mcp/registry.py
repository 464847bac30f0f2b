import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from .errors import AuthError
from .models import ToolContext
from .tagmanager import gtm_error_payload

log = logging.getLogger(__name__)


# ---- MCP helpers (text-only results so Claude/ChatGPT/Gemini render reliably) ----
def mcp_text(txt: str):
    return {"content": [{"type": "text", "text": txt}]}


def ok_text(title: str, data_obj=None):
    pretty = ""
    if data_obj is not None:
        pretty = "\n" + json.dumps(data_obj, indent=2, ensure_ascii=False)
    return mcp_text(f"{title}{pretty}")


def err_text(msg: str, data_obj=None):
    detail = ""
    if data_obj is not None:
        detail = "\n" + json.dumps(data_obj, indent=2, ensure_ascii=False)
    return {"isError": True, "content": [{"type": "text", "text": f"{msg}{detail}"}]}


def error_response(message: str, error: str):
    return err_text(f"{error}: {message}")


@dataclass
class Tool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Callable[[ToolContext, Dict[str, Any]], Dict[str, Any]]

    def descriptor(self):
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class ToolRegistry:
    def __init__(self):
        self._tools = OrderedDict()

    def add(self, tool: Tool) -> Tool:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        return tool

    def tool(self, name: str, description: str, input_schema: Dict[str, Any]):
        def deco(fn):
            self.add(Tool(name, description, input_schema, fn))
            return fn
        return deco

    def names(self) -> List[str]:
        return list(self._tools)

    def descriptors(self) -> List[Dict[str, Any]]:
        return [t.descriptor() for t in self._tools.values()]

    def call(self, name: str, args: Dict[str, Any], ctx: ToolContext):
        tool = self._tools.get(name)
        if not tool:
            return err_text(f"Unsupported tool '{name}'")
        try:
            return tool.handler(ctx, args or {})
        except ValueError as ve:
            return err_text("Invalid input", {"message": str(ve)})
        except AuthError as ae:
            log.warning("Auth error in %s: %s", name, ae)
            return err_text("Authentication error", {"message": str(ae)})
        except Exception as e:
            log.exception("Error in tools/call")
            return err_text("Tool call failed", gtm_error_payload(f"tools/call.{name}", e))
