"""Protean Engine runner for the commerce domain.

Starts the Engine workers that process events asynchronously in production:
- OutboxProcessor: polls the outbox table and publishes domain events
- StreamSubscriptions: reads the streams and invokes event handlers

Usage:
    python src/server.py
"""

import asyncio

from protean.server.engine import Engine

from commerce.domain import commerce
from commerce.utils.logging import configure_logging


async def run():
    commerce.init()
    await Engine(commerce).run()


def main():
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
