"""CLI entry point for the API tool adapter."""

from __future__ import annotations

import asyncio

import uvicorn

from .config import get_settings
from .logging import configure_logging
from .server import build_server


async def _run() -> None:
    settings = get_settings()
    configure_logging(settings.adapter_log_level)

    mcp, app = build_server(settings)
    if settings.adapter_transport.lower() == "stdio":
        await mcp.run_stdio_async()
        return

    if not app:
        raise RuntimeError(f"HTTP app unavailable for transport={settings.adapter_transport}")
    config = uvicorn.Config(app, host=settings.adapter_host, port=settings.adapter_port)
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
