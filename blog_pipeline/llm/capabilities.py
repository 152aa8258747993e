"""Optional tool capabilities for the research and draft stages.

Tool providers are external services (an HTTP endpoint listing tools, or a
static list configured in code). Discovery runs at the start of each workflow
with a hard timeout per provider; a provider that times out or errors is
logged and left out, and the run continues with whatever was discovered.
"""

import asyncio
import logging
from typing import Iterable, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel

from blog_pipeline.executor.errors import CapabilityUnavailable

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_TIMEOUT = 15.0


class ToolSpec(BaseModel):
    """A tool advertised by a provider."""

    name: str
    description: str = ""
    provider: str = ""


@runtime_checkable
class ToolProvider(Protocol):
    name: str

    async def list_tools(self) -> list[ToolSpec]: ...


class StaticToolProvider:
    """Provider backed by a fixed list (tests, built-in tools)."""

    def __init__(self, name: str, tools: Iterable[ToolSpec]):
        self.name = name
        self._tools = [t.model_copy(update={"provider": name}) for t in tools]

    async def list_tools(self) -> list[ToolSpec]:
        return list(self._tools)


class HttpToolProvider:
    """Provider that lists tools from `GET {base_url}/tools`.

    The endpoint returns either a JSON list of {name, description} objects or
    an object with a "tools" key holding that list.
    """

    def __init__(
        self,
        base_url: str,
        name: Optional[str] = None,
        timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.name = name or self.base_url
        self._timeout = timeout
        self._transport = transport

    async def list_tools(self) -> list[ToolSpec]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/tools")
            response.raise_for_status()
            payload = response.json()

        items = payload.get("tools", []) if isinstance(payload, dict) else payload
        return [
            ToolSpec(
                name=item["name"],
                description=item.get("description", ""),
                provider=self.name,
            )
            for item in items
            if isinstance(item, dict) and item.get("name")
        ]


async def _discover_one(provider: ToolProvider, timeout: float) -> list[ToolSpec]:
    try:
        return await asyncio.wait_for(provider.list_tools(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise CapabilityUnavailable(provider.name, f"timed out after {timeout:.1f}s") from e
    except Exception as e:
        raise CapabilityUnavailable(provider.name, f"{type(e).__name__}: {e}") from e


async def discover_capabilities(
    providers: Iterable[ToolProvider],
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
) -> list[ToolSpec]:
    """Query every provider concurrently and merge the tools that came back.

    Args:
        providers: Tool providers to query
        timeout: Hard per-provider timeout in seconds

    Returns:
        Tools from the providers that answered in time, in provider order
    """
    providers = list(providers)
    if not providers:
        return []

    results = await asyncio.gather(
        *(_discover_one(p, timeout) for p in providers),
        return_exceptions=True,
    )

    tools: list[ToolSpec] = []
    for provider, result in zip(providers, results):
        if isinstance(result, CapabilityUnavailable):
            logger.warning(f"[capabilities] {result}; continuing without it")
            continue
        if isinstance(result, BaseException):
            raise result
        tools.extend(result)

    logger.info(f"[capabilities] Discovered {len(tools)} tools from {len(providers)} providers")
    return tools


def render_tool_section(tools: list[ToolSpec]) -> str:
    """Markdown block describing available tools, appended to stage prompts."""
    if not tools:
        return ""
    lines = ["## Available Tools"]
    lines.extend(f"- {t.name}: {t.description}" if t.description else f"- {t.name}" for t in tools)
    return "\n".join(lines)
