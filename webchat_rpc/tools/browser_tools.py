"""MCP tools that drive chat sessions through the control surface."""

from __future__ import annotations

import json

import httpx

from ..config import CONTROL_API_TOKEN, CONTROL_URL
from ..constants import DEFAULT_QUERY_TIMEOUT_MS, DEFAULT_READY_TIMEOUT_MS, DEFAULT_SEND_TIMEOUT_MS


async def _call_control_surface(
    method: str,
    path: str,
    json_body: dict | None = None,
    timeout_ms: int = 120_000,
) -> dict:
    """Make a request to the control surface HTTP service."""
    url = f"{CONTROL_URL}{path}"
    headers = {"Authorization": f"Bearer {CONTROL_API_TOKEN}"} if CONTROL_API_TOKEN else {}
    # Leave headroom so the server's own timeout error arrives first.
    timeout = timeout_ms / 1000 + 30
    try:
        async with httpx.AsyncClient(timeout=timeout, headers=headers) as client:
            if method == "GET":
                resp = await client.get(url, params=json_body or None)
            else:
                resp = await client.post(url, json=json_body or {})

            if resp.status_code >= 400:
                data = resp.json()
                error = data.get("error", f"HTTP {resp.status_code}")
                if data.get("data"):
                    error = f"{error} {json.dumps(data['data'])}"
                return {"error": error}
            return resp.json()

    except httpx.ConnectError:
        return {
            "error": "Control surface is not reachable at "
            f"{CONTROL_URL}. It should auto-start with the MCP server. "
            "If running standalone: python -m webchat_rpc.session_manager.api"
        }
    except httpx.TimeoutException:
        return {"error": "Control surface timed out. The chat page may still be generating."}
    except (httpx.HTTPError, ValueError) as e:
        return {"error": f"Failed to talk to the control surface: {e}"}


def _target(tab_id: str, key: str) -> dict:
    body = {}
    if tab_id:
        body["tab_id"] = tab_id
    if key:
        body["key"] = key
    return body


async def query(
    prompt: str,
    attachments: list[str] | None = None,
    tab_id: str = "",
    key: str = "",
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
) -> str:
    """Submit a prompt to a chat session and wait for the complete reply.

    Returns:
        The reply text, followed by a summary of extracted code blocks.
    """
    body = {"prompt": prompt, "attachments": attachments or [], "timeout_ms": timeout_ms}
    result = await _call_control_surface("POST", "/query", {**body, **_target(tab_id, key)}, timeout_ms)

    if "error" in result:
        return f"Error: {result['error']}"

    reply = result.get("result", {})
    meta = reply.get("meta", {})
    lines = [reply.get("text", "")]
    blocks = reply.get("code_blocks", [])
    if blocks:
        langs = ", ".join(b.get("language") or "plain" for b in blocks)
        lines.append(f"\n[{len(blocks)} code block(s): {langs}]")
    if meta.get("has_error"):
        lines.append("\n[The chat site reported an error in this reply]")
    if meta.get("continues"):
        lines.append(f"\n[Continued {meta['continues']} time(s)]")
    lines.append(f"\n[tab {result.get('tab_id')}]")
    return "\n".join(lines)


async def send(
    text: str,
    stop_after_send: bool = False,
    tab_id: str = "",
    key: str = "",
    timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS,
) -> str:
    """Type and submit text without waiting for the reply."""
    body = {"text": text, "stop_after_send": stop_after_send, "timeout_ms": timeout_ms}
    result = await _call_control_surface("POST", "/send", {**body, **_target(tab_id, key)}, timeout_ms)

    if "error" in result:
        return f"Error: {result['error']}"
    return f"Sent to tab {result.get('tab_id')}."


async def read_page(max_chars: int = 20_000, tab_id: str = "", key: str = "") -> str:
    """Visible text of the chat page, capped at ``max_chars``."""
    result = await _call_control_surface("POST", "/read-page", {"max_chars": max_chars, **_target(tab_id, key)})

    if "error" in result:
        return f"Error: {result['error']}"
    return result.get("text", "")


async def navigate(url: str, tab_id: str = "", key: str = "") -> str:
    result = await _call_control_surface("POST", "/navigate", {"url": url, **_target(tab_id, key)})

    if "error" in result:
        return f"Error: {result['error']}"
    return f"Tab {result.get('tab_id')} is now at {result.get('url')}."


async def ensure_ready(tab_id: str = "", key: str = "", timeout_ms: int = DEFAULT_READY_TIMEOUT_MS) -> str:
    """Wait until the composer is usable, surfacing the window if a human is needed."""
    body = {"timeout_ms": timeout_ms, **_target(tab_id, key)}
    result = await _call_control_surface("POST", "/ensure-ready", body, timeout_ms)

    if "error" in result:
        return f"Error: {result['error']}"
    return f"Tab {result.get('tab_id')} is ready."


async def status(tab_id: str = "") -> str:
    result = await _call_control_surface("GET", "/status", {"tab_id": tab_id} if tab_id else None)

    if "error" in result:
        return f"Error: {result['error']}"
    return json.dumps(result, indent=2)


async def list_tabs() -> str:
    result = await _call_control_surface("GET", "/tabs")

    if "error" in result:
        return f"Error: {result['error']}"

    tabs = result.get("tabs", [])
    if not tabs:
        return "No open tabs."

    default_id = result.get("default_tab_id")
    lines = [f"{len(tabs)} open tab(s):\n"]
    for tab in tabs:
        flags = []
        if tab.get("id") == default_id:
            flags.append("default")
        if tab.get("blocked"):
            flags.append(f"blocked: {tab.get('blocked_kind') or 'unknown'}")
        suffix = f" ({', '.join(flags)})" if flags else ""
        lines.append(f"- {tab.get('name')} [{tab.get('id')}]{suffix}\n  {tab.get('url', '')}")
    return "\n".join(lines)


async def create_tab(key: str = "", name: str = "") -> str:
    result = await _call_control_surface("POST", "/tabs/create", {"key": key, "name": name})

    if "error" in result:
        return f"Error: {result['error']}"
    return f"Tab {result.get('tab_id')} is open."


async def close_tab(tab_id: str) -> str:
    result = await _call_control_surface("POST", "/tabs/close", {"tab_id": tab_id})

    if "error" in result:
        return f"Error: {result['error']}"
    return f"Closed tab {tab_id}."


async def image_gen(
    prompt: str,
    max_images: int = 6,
    tab_id: str = "",
    key: str = "",
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
) -> str:
    """Ask for images, then save the ones in the reply to the download directory."""
    reply = await query(prompt, tab_id=tab_id, key=key, timeout_ms=timeout_ms)
    if reply.startswith("Error:"):
        return reply

    body = {"max_images": max_images, **_target(tab_id, key)}
    result = await _call_control_surface("POST", "/download-images", body)
    if "error" in result:
        return f"Error: {result['error']}"

    files = result.get("files", [])
    if not files:
        return f"{reply}\n\nNo images found in the reply."
    saved = "\n".join(f"- {f.get('path')} ({f.get('mime')})" for f in files)
    return f"{reply}\n\nSaved {len(files)} image(s):\n{saved}"
