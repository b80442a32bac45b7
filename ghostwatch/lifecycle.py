"""
Application lifespan management.

Handles startup and shutdown of all subsystems, in order:
- Database initialization and startup job recovery
- Userbot (Telethon) and Bot API clients
- Services and their background loops
Shutdown runs the same steps in reverse.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, AsyncIterator, Optional

from telegram import Bot

from .core.config import Settings, get_settings
from .core.database import close_database, init_database
from .services.admission_controller import AdmissionController
from .services.connection_watchdog import ConnectionWatchdog
from .services.content_fetcher import StoryFetcher
from .services.delivery_service import TelegramDeliveryService
from .services.entitlement_service import EntitlementService
from .services.hidden_content_cache import HiddenContentCache
from .services.job_gateway import InteractiveRunner, JobGateway
from .services.job_store import JobStore
from .services.monitor_scheduler import MonitorScheduler
from .services.notification_service import TelegramNotifier
from .services.queue_processor import QueueProcessor
from .services.stealth_coordinator import StealthCoordinator
from .services.stuck_job_recovery import StuckJobRecovery
from .services.telethon_service import TelethonContentCodec, TelethonService
from .utils.task_registry import TaskRegistry

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Wired service graph, handed to whatever drives the bot."""

    settings: Settings
    provider: Any
    bot: Any
    store: JobStore
    recovery: StuckJobRecovery
    cache: HiddenContentCache
    stealth: StealthCoordinator
    entitlements: EntitlementService
    processor: QueueProcessor
    admission: AdmissionController
    scheduler: MonitorScheduler
    gateway: JobGateway
    watchdog: ConnectionWatchdog
    background: TaskRegistry


@asynccontextmanager
async def lifespan(
    settings: Optional[Settings] = None,
    provider: Optional[Any] = None,
    bot: Optional[Any] = None,
) -> AsyncIterator[Application]:
    """Start every subsystem, yield the wired application, stop on exit."""
    settings = settings or get_settings()
    logger.info("Ghostwatch starting up (environment=%s)", settings.environment)

    await init_database(settings.database_url)

    store = JobStore()
    recovery = StuckJobRecovery(
        store,
        retention=timedelta(hours=settings.job_retention_hours),
        stale_after=timedelta(seconds=settings.processing_timeout_seconds * 2),
    )
    report = await recovery.run_once(startup=True)
    logger.info("Startup recovery: reset=%d purged=%d", report.reset, report.purged)

    if provider is None:
        provider = TelethonService(
            api_id=settings.userbot_api_id,
            api_hash=settings.userbot_api_hash,
            session=settings.userbot_session,
            retry_attempts=settings.retry_attempts,
            retry_base_delay=settings.retry_base_delay,
        )
    await provider.connect()

    if bot is None:
        bot = Bot(token=settings.telegram_bot_token)
    await bot.initialize()

    cache = HiddenContentCache(codec=TelethonContentCodec())
    provider.attach_hidden_cache(cache)
    stealth = StealthCoordinator(
        provider,
        future_window=settings.stealth_future_window_seconds,
        past_window=settings.stealth_past_window_seconds,
    )
    notifier = TelegramNotifier(bot, settings.bot_admin_id)
    deliverer = TelegramDeliveryService(bot, provider, concurrency=settings.download_concurrency)
    entitlements = EntitlementService(settings.bot_admin_id)
    fetcher = StoryFetcher(provider, stealth, cache)

    processor = QueueProcessor(
        store,
        fetcher,
        deliverer,
        notifier,
        processing_timeout=settings.processing_timeout_seconds,
        poll_interval=settings.queue_poll_interval_seconds,
    )
    admission = AdmissionController(
        InteractiveRunner(fetcher, deliverer, notifier),
        entitlements,
        notifier,
        cooldowns=settings.active_cooldowns,
        max_task_duration=settings.max_task_duration_seconds,
        watchdog_interval=settings.watchdog_interval_seconds,
    )
    scheduler = MonitorScheduler(
        provider,
        fetcher,
        deliverer,
        notifier,
        entitlements,
        check_interval=settings.monitor_check_interval_seconds,
        max_monitors_per_owner=settings.max_monitors_per_owner,
        username_refresh_interval=settings.username_refresh_interval_seconds,
    )
    gateway = JobGateway(admission, store, processor)
    watchdog = ConnectionWatchdog().install()
    background = TaskRegistry("background")

    processor.start()
    admission.start()
    await scheduler.start()
    background.schedule("job-recovery", recovery.run_periodic(settings.recovery_interval_seconds))
    logger.info("Ghostwatch started")

    app = Application(
        settings=settings,
        provider=provider,
        bot=bot,
        store=store,
        recovery=recovery,
        cache=cache,
        stealth=stealth,
        entitlements=entitlements,
        processor=processor,
        admission=admission,
        scheduler=scheduler,
        gateway=gateway,
        watchdog=watchdog,
        background=background,
    )
    try:
        yield app
    finally:
        logger.info("Ghostwatch shutting down...")
        await background.cancel_all()
        await scheduler.stop()
        await admission.stop()
        await processor.stop()
        watchdog.uninstall()
        try:
            await provider.disconnect()
        except Exception as e:
            logger.warning("Error disconnecting userbot: %s", e)
        try:
            await bot.shutdown()
        except Exception as e:
            logger.warning("Error shutting down bot: %s", e)
        await close_database()
        logger.info("Ghostwatch stopped")
