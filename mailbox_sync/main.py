"""
Mailbox Sync Service
Incremental mailbox synchronization with listener subscriptions and failover
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket

from . import __version__
from .cache import CacheService
from .config import BackendSettings, FailoverSettings, FeatureFlags, ListenerSettings, SyncSettings
from .database import Database
from .listener import (
    FailoverController,
    ListenerRecoveryHandler,
    ListenerSubscriptionManager,
    create_listener_router,
)
from .mailbox import ListenerMailSender, MailboxService, MailboxValidator
from .notifications import WebSocketChannelManager
from .providers import HttpMailboxBackend
from .scheduling import JobScheduler
from .sync import LocalStoreAdapter, SyncRunner

load_dotenv()

structlog.configure(
    processors=[structlog.dev.ConsoleRenderer()],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    ),
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True
)

logger = structlog.get_logger(__name__)

# Global services
database: Database = None
cache_service: CacheService = None
backend: HttpMailboxBackend = None
listener_manager: ListenerSubscriptionManager = None
mail_sender: ListenerMailSender = None
job_scheduler: JobScheduler = None
failover_controller: FailoverController = None
channel_manager = WebSocketChannelManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    global database, cache_service, backend, listener_manager, mail_sender, job_scheduler, failover_controller

    try:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL must be set")

        database = Database(database_url)
        await database.initialize()

        redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
        cache_service = CacheService(redis_url)
        await cache_service.initialize()

        sync_settings = SyncSettings()
        listener_settings = ListenerSettings()
        failover_settings = FailoverSettings()
        feature_flags = FeatureFlags.from_env()

        mailbox_service = MailboxService(database)
        backend = HttpMailboxBackend(BackendSettings())
        local_store = LocalStoreAdapter(database, sync_settings)
        sync_runner = SyncRunner(mailbox_service, backend, local_store, sync_settings, channel_manager)

        listener_manager = ListenerSubscriptionManager(mailbox_service, listener_settings, feature_flags)
        mail_sender = ListenerMailSender(listener_settings)
        validator = MailboxValidator(listener_manager, mail_sender)

        job_scheduler = JobScheduler(cache_service)
        recovery_handler = ListenerRecoveryHandler(
            mailbox_service, listener_manager, sync_runner, feature_flags, failover_settings, sync_settings
        )
        failover_controller = FailoverController(
            mailbox_service, listener_manager, job_scheduler, recovery_handler, failover_settings, feature_flags
        )

        app.include_router(
            create_listener_router(mailbox_service, listener_manager, sync_runner, job_scheduler, validator)
        )

        await failover_controller.start()

        logger.info("Mailbox Sync Service initialized successfully",
                    checkpoint_policy=sync_settings.checkpoint_policy.value,
                    failover_interval_minutes=failover_settings.interval_minutes)

        yield

    except Exception as e:
        logger.error("Failed to initialize Mailbox Sync Service", error=str(e))
        raise
    finally:
        if job_scheduler:
            await job_scheduler.shutdown()
        if listener_manager:
            await listener_manager.close_client()
        if mail_sender:
            await mail_sender.close()
        if backend:
            await backend.close()
        if cache_service:
            await cache_service.close()
        if database:
            await database.close()


app = FastAPI(
    title="Mailbox Sync Service",
    description="Incremental mailbox synchronization with listener subscriptions and failover",
    version=__version__,
    lifespan=lifespan
)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    try:
        db_status = await database.health_check()
        cache_status = await cache_service.health_check()
        listener_status = "available" if await listener_manager.is_service_available() else "unavailable"

        overall_status = "healthy" if all([
            db_status == "healthy",
            cache_status == "healthy"
        ]) else "degraded"

        return {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "database": db_status,
                "cache": cache_status,
                "listener": listener_status
            },
            "version": __version__
        }
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error": str(e)
        }


@app.websocket("/ws/status/{user_id}")
async def status_stream(websocket: WebSocket, user_id: str):
    """Live synchronization status lines for a user"""
    await channel_manager.serve(websocket, user_id)


def main():
    """Main entry point"""
    try:
        host = os.getenv("HOST", "0.0.0.0")
        port = int(os.getenv("PORT", "7200"))

        logger.info("Starting Mailbox Sync Service", host=host, port=port)

        import uvicorn
        uvicorn.run(
            "mailbox_sync.main:app",
            host=host,
            port=port,
            reload=os.getenv("ENVIRONMENT") == "development",
            log_level="info"
        )

    except Exception as e:
        logger.error("Failed to start Mailbox Sync Service", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
