from __future__ import annotations

import asyncio

from tenantadmin.core.logging import configure_logging
from tenantadmin.services.events.outbox import run_outbox_relay_loop


async def _main() -> None:
    # Standalone relay for deployments that run it apart from the arq worker.
    configure_logging()
    await run_outbox_relay_loop()


if __name__ == "__main__":
    asyncio.run(_main())
