# cardbridge/worker_main.py
"""
Standalone due-evaluation worker.

    BRIDGE_HANDLERS=myapp.bridge_handlers python -m cardbridge.worker_main

The handlers module must expose `register_handlers(bridge)`, which registers
one callback per callback type with `bridge.register(...)`.
"""

import asyncio
import importlib
import logging

from cardbridge import settings
from cardbridge.bridge import Bridge
from cardbridge.entities import Base

logger = logging.getLogger("cardbridge.worker")


def load_handlers(bridge: Bridge, module_name: str) -> None:
    module = importlib.import_module(module_name)
    register = getattr(module, "register_handlers", None)
    if register is None:
        raise RuntimeError(f"{module_name} has no register_handlers(bridge)")
    register(bridge)


def main() -> None:
    if not settings.HANDLERS_MODULE:
        raise RuntimeError("BRIDGE_HANDLERS env var is required to run the worker")

    engine = settings.get_db_engine()
    Base.metadata.create_all(engine)

    bridge = Bridge(settings.create_session_factory(engine))
    load_handlers(bridge, settings.HANDLERS_MODULE)

    worker = bridge.worker(
        poll_interval=settings.WORKER_POLL_INTERVAL,
        max_concurrent=settings.CONCURRENT_INSTANCES,
    )
    asyncio.run(worker.run())


if __name__ == "__main__":
    main()
