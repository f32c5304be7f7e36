import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field

from agentwire.cancellation import CancellationToken
from agentwire.errors import RequestAborted
from agentwire.message import ChatMode, ToolResult

logger = logging.getLogger(__name__)


class ToolExecutor(Protocol):
    """Performs a side-effecting action on behalf of the model.

    ``execute`` returns a result value, or ``{"error": "..."}`` for a
    business-level failure.  It raises only for unexpected faults, which
    callers convert into an error outcome via :func:`safe_execute`.
    Implementations are not assumed idempotent; nothing retries them.
    """

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any: ...


_JSON_TYPES = {
    "str": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
    "NoneType": "null",
    "dict": "object",
    "list": "array",
    "tuple": "array",
    "set": "array",
}


def _build_parameters_schema(func: Callable) -> dict:
    signature = inspect.signature(func)
    properties = {}
    required = []
    for param_name, param in signature.parameters.items():
        annotation = param.annotation
        type_name = getattr(annotation, "__name__", "str")
        if annotation is inspect.Parameter.empty:
            type_name = "str"
        properties[param_name] = {
            "type": _JSON_TYPES.get(type_name, "string"),
            "description": "",
        }
        if param.default is inspect.Parameter.empty:
            required.append(param_name)
    return {"type": "object", "properties": properties, "required": required}


class Tool(BaseModel):
    """A named callable exposed to the model as a function tool."""

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict | None = None
    model_config = {"arbitrary_types_allowed": True}

    def get_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema or _build_parameters_schema(self.func),
            },
        }

    async def __call__(self, **kwargs) -> Any:
        result = self.func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    parameters_schema: dict | None = None,
):
    """Decorator turning a plain or async function into a :class:`Tool`."""

    def wrap(f: Callable) -> Tool:
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else (inspect.getdoc(f) or ""),
            parameters_schema=parameters_schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """A :class:`ToolExecutor` dispatching to registered tools by name."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, t: Tool) -> None:
        self._tools[t.name] = t

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def schemas(self) -> list[dict]:
        return [t.get_schema() for t in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        t = self._tools.get(name)
        if t is None:
            logger.warning(f"Tool not found: {name}")
            return {"success": False, "error": f"Unknown tool: {name}"}
        logger.info(f"Calling {name} with {arguments}")
        return await t(**arguments)


async def safe_execute(
    executor: ToolExecutor,
    name: str,
    arguments: dict[str, Any],
    cancel: CancellationToken | None = None,
) -> Any:
    """Run one tool call, turning unexpected exceptions into ``{"error": ...}``.

    Cancellation is not a tool failure and propagates as
    :class:`RequestAborted`.
    """
    try:
        if cancel is not None:
            return await cancel.wait(executor.execute(name, arguments))
        return await executor.execute(name, arguments)
    except RequestAborted:
        raise
    except Exception as e:
        logger.error(f"Tool {name} raised: {e}")
        return {"error": f"Tool execution failed: {e}"}


@dataclass
class ToolOutcome:
    ok: bool
    error: str | None = None
    warning: str | None = None


def tool_outcome(result: Any) -> ToolOutcome:
    """Classify a tool result as success or failure.

    A result fails when it is a mapping with ``success`` set to ``False``
    or with a string ``error``; anything else succeeds.
    """
    if not isinstance(result, dict):
        return ToolOutcome(ok=True)
    warning = result.get("warning") if isinstance(result.get("warning"), str) else None
    message = result.get("message") if isinstance(result.get("message"), str) else None
    error = result.get("error") if isinstance(result.get("error"), str) else None

    if result.get("success") is False:
        return ToolOutcome(ok=False, error=message or error or "Tool failed", warning=warning)
    if error is not None:
        return ToolOutcome(ok=False, error=message or error, warning=warning)
    return ToolOutcome(ok=True, warning=warning)


def to_tool_result(result: Any) -> ToolResult:
    outcome = tool_outcome(result)
    if outcome.ok:
        return ToolResult(success=True, data=result)
    return ToolResult(success=False, data=result, error=outcome.error)


def stringify_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result if result is not None else "", indent=2, ensure_ascii=False)


def build_working_summary(name: str, arguments: dict[str, Any]) -> str:
    """One line of progress narration for a tool call about to run."""
    if name == "tavily_search":
        query = arguments.get("query")
        if isinstance(query, str) and query:
            return f"Searching: {query}"
        return "Searching: no query provided"
    return f"Calling tool: {name}"


def _function(name: str, description: str, properties: dict, required: list[str] | None = None) -> dict:
    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required is not None:
        parameters["required"] = required
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


_PATH = {"type": "string", "description": "The file path, e.g., /src/index.js"}

WEB_SEARCH_TOOLS = [
    _function(
        "tavily_search",
        "Search the web for current information. Use this when you need real-time "
        "data, news, or information that might not be in your training data.",
        {"query": {"type": "string", "description": "The search query to look up"}},
        ["query"],
    ),
]

FILE_TOOLS = [
    _function(
        "read_file",
        "Read the content of a file in the virtual sandbox",
        {"path": _PATH},
        ["path"],
    ),
    _function(
        "write_file",
        "Create or overwrite a file in the virtual sandbox",
        {
            "path": _PATH,
            "content": {"type": "string", "description": "The content to write to the file"},
        },
        ["path", "content"],
    ),
    _function(
        "list_files",
        "List files and directories in the virtual sandbox",
        {
            "path": {
                "type": "string",
                "description": "The directory path to list, defaults to root if not provided",
            }
        },
    ),
    _function(
        "delete_file",
        "Delete a file or empty directory in the virtual sandbox",
        {"path": {"type": "string", "description": "The path to delete"}},
        ["path"],
    ),
]

SHELL_TOOLS = [
    _function(
        "run_command",
        "Execute a shell command in the virtual sandbox. Supported commands: "
        "ls, cd, pwd, cat, mkdir, touch, rm, echo, grep, find",
        {"command": {"type": "string", "description": "The shell command to execute"}},
        ["command"],
    ),
    _function(
        "search_files",
        "Search for a pattern in file contents within the virtual sandbox",
        {
            "pattern": {"type": "string", "description": "The regex pattern to search for"},
            "path": {"type": "string", "description": "The directory to search in, defaults to root"},
        },
        ["pattern"],
    ),
]


def get_tools_for_mode(mode: ChatMode | str) -> list[dict] | None:
    """Return the capability list offered upstream for *mode*."""
    mode = ChatMode(mode)
    if mode == ChatMode.AGENT:
        return list(WEB_SEARCH_TOOLS)
    if mode == ChatMode.IDE:
        return list(FILE_TOOLS)
    if mode == ChatMode.CLI:
        return FILE_TOOLS + SHELL_TOOLS
    return None


def executes_on_server(mode: ChatMode | str) -> bool:
    """Whether the producing side runs the tool loop for *mode*.

    File-system and shell tools act on the requester's sandbox, so those
    modes delegate execution to the consuming side.
    """
    return ChatMode(mode) == ChatMode.AGENT
