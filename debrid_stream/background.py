import logging

logger = logging.getLogger(__name__)


async def start_background_tasks(manager):
    """
    Starts the engine (and with it the alert pump) and the idle reaper.
    The reaper is the backstop that reclaims sessions whose clients went away
    without a clean teardown.
    """
    await manager.engine.start()
    manager.start_reaper()
    logger.info(
        f"Background tasks started ✓ (reaper every {manager.reaper_interval:g}s, "
        f"idle threshold {manager.idle_threshold:g}s)"
    )


async def stop_background_tasks(manager):
    """Stops the reaper, releases every session, then shuts the engine down."""
    logger.info("Shutting down. Releasing torrent sessions...")
    try:
        await manager.close()
    finally:
        await manager.engine.close()
    logger.info("Torrent sessions released ✓")
