import asyncio
import signal

from loguru import logger

# -------------------------------
# UVLOOP (when installed)
# -------------------------------
try:
    import uvloop
    uvloop.install()
except ImportError:
    logger.warning("uvloop not available, using default asyncio loop.")

# -------------------------------
# INTERNAL IMPORTS
# -------------------------------
from pageindex.monitoring.metrics_server import start_metrics_server
from pageindex.service import PageIndexService
from pageindex.storage.document_store import DocumentStore
from pageindex.utils.config_loader import load_config
from pageindex.utils.logger import setup_logger


# -------------------------------
# MAIN APPLICATION
# -------------------------------
async def main() -> None:
    config = load_config()
    log = setup_logger(config.log_level, config.log_path, component="pageindex")

    log.info("Starting page index...")

    store = DocumentStore.from_config(config)
    await store.connect()

    service = PageIndexService.from_config(store, config)
    generation = await service.ensure_generation()
    log.info(f"Alias {config.index_alias} is served by {generation}")

    count = await store.count()
    log.info(f"{count} page(s) indexed")

    metrics_runner, _ = await start_metrics_server(port=config.metrics_port)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    log.info("Page index started successfully.")

    try:
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await metrics_runner.shutdown()
        await metrics_runner.cleanup()
        await store.close()


def run() -> None:
    asyncio.run(main())


# -------------------------------
# ENTRYPOINT
# -------------------------------
if __name__ == "__main__":
    run()
