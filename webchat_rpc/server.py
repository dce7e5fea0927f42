"""MCP Server entry point for the web chat bridge.

Exposes the browser chat sessions as tools via the Model Context Protocol:
- Conversation: browser_query, browser_send, browser_image_gen
- Page: browser_read_page, browser_navigate, browser_ensure_ready, browser_status
- Tabs: browser_tabs, browser_tab_create, browser_tab_close

The control surface HTTP service (aiohttp on localhost:8025) is auto-started
as part of the MCP server lifecycle, so no separate process is needed.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import CONTROL_HOST, CONTROL_PORT, ensure_dirs
from .constants import DEFAULT_QUERY_TIMEOUT_MS
from .tools import browser_tools

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("webchat-rpc")

ensure_dirs()


# ── Lifespan: auto-start control surface ─────────────────────────────────────


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Start the control surface HTTP service alongside the MCP server."""
    from .session_manager.api import create_app

    app = create_app()
    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, CONTROL_HOST, CONTROL_PORT)
    managed = False
    try:
        await site.start()
        logger.info("Control surface auto-started on %s:%s", CONTROL_HOST, CONTROL_PORT)
        managed = True
    except OSError:
        # Port already in use: another instance owns the browser
        logger.info("Control surface already running on %s:%s", CONTROL_HOST, CONTROL_PORT)
        await runner.cleanup()

    try:
        yield {}
    finally:
        if managed:
            await runner.cleanup()
            logger.info("Control surface stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "webchat-rpc",
    lifespan=lifespan,
    instructions=(
        "Web chat bridge - drives chat assistants in a real browser window. "
        "A default tab opens automatically. Use browser_query to ask and wait for the reply; "
        "pass a key to get a dedicated tab that is created on first use. "
        "If a tool reports a login or captcha wall, the window has been brought to front: "
        "ask the user to resolve it, then call browser_ensure_ready. "
        "rate_limited errors carry retry_after_ms; wait that long before retrying."
    ),
)


# ── Conversation Tools ───────────────────────────────────────────────────────


@mcp.tool()
async def browser_query(
    prompt: str,
    attachments: list[str] | None = None,
    tab_id: str = "",
    key: str = "",
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
) -> str:
    """Send a prompt to the chat page and return the complete reply.

    Args:
        prompt: Text to submit.
        attachments: Local file paths to attach before submitting.
        tab_id: Target tab id. Empty = use key or the default tab.
        key: Stable tab key; the tab is created on first use.
        timeout_ms: Overall deadline for readiness plus reply.
    """
    return await browser_tools.query(prompt, attachments, tab_id, key, timeout_ms)


@mcp.tool()
async def browser_send(
    text: str,
    stop_after_send: bool = False,
    tab_id: str = "",
    key: str = "",
) -> str:
    """Submit text without waiting for a reply.

    Args:
        text: Text to submit.
        stop_after_send: Click the stop control right after the submission lands.
        tab_id: Target tab id.
        key: Stable tab key.
    """
    return await browser_tools.send(text, stop_after_send, tab_id, key)


@mcp.tool()
async def browser_image_gen(prompt: str, max_images: int = 6, tab_id: str = "", key: str = "") -> str:
    """Ask for images and save those in the reply to the download directory.

    Args:
        prompt: Image request.
        max_images: Maximum images to save (default 6).
        tab_id: Target tab id.
        key: Stable tab key.
    """
    return await browser_tools.image_gen(prompt, max_images, tab_id, key)


# ── Page Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
async def browser_read_page(max_chars: int = 20_000, tab_id: str = "", key: str = "") -> str:
    """Read the visible text of the chat page.

    Args:
        max_chars: Cap on returned characters.
        tab_id: Target tab id.
        key: Stable tab key.
    """
    return await browser_tools.read_page(max_chars, tab_id, key)


@mcp.tool()
async def browser_navigate(url: str, tab_id: str = "", key: str = "") -> str:
    """Load a URL in a tab."""
    return await browser_tools.navigate(url, tab_id, key)


@mcp.tool()
async def browser_ensure_ready(tab_id: str = "", key: str = "") -> str:
    """Wait until the tab's composer is usable.

    Brings the window to front if a login, captcha or broken UI needs a human.
    """
    return await browser_tools.ensure_ready(tab_id, key)


@mcp.tool()
async def browser_status(tab_id: str = "") -> str:
    """Challenge state of a tab (blocked, kind, indicators) plus the tab list."""
    return await browser_tools.status(tab_id)


# ── Tab Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
async def browser_tabs() -> str:
    """List open tabs, most recently used first."""
    return await browser_tools.list_tabs()


@mcp.tool()
async def browser_tab_create(key: str = "", name: str = "") -> str:
    """Open a tab. With a key, returns the existing tab for that key instead."""
    return await browser_tools.create_tab(key, name)


@mcp.tool()
async def browser_tab_close(tab_id: str) -> str:
    """Close a tab. The default tab cannot be closed."""
    return await browser_tools.close_tab(tab_id)


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting web chat bridge MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
