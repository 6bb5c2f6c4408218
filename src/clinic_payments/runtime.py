"""Composition root: builds the store, gateway, services and monitor once."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings
from .connectors import ConnectorBase, PayPalConnector, SimulatorConfig, SimulatorConnector
from .database import DatabaseManager
from .notifications import NotificationService
from .reconciliation.feed import PaymentChangeFeed
from .reconciliation.monitor import StatusMonitor
from .reconciliation.service import ReconciliationService
from .services import PaymentService

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> ConnectorBase:
    """Create the configured payment gateway connector."""
    if settings.payment_gateway == "simulator":
        logger.info("Using simulator payment gateway")
        return SimulatorConnector(SimulatorConfig(frontend_url=settings.paypal.frontend_url))

    if settings.payment_gateway != "paypal":
        raise ValueError(f"Unsupported payment gateway: {settings.payment_gateway}")

    paypal = settings.paypal
    return PayPalConnector(
        client_id=paypal.client_id,
        client_secret=paypal.client_secret,
        mode=paypal.mode,
        currency=paypal.currency,
        frontend_url=paypal.frontend_url,
        webhook_id=paypal.webhook_id,
        timeout=paypal.timeout,
    )


class ClinicRuntime:
    """Holds the application's long-lived collaborators.

    Example:
        runtime = await ClinicRuntime.build(Settings.from_env())
        result = await runtime.reconciliation.manual_sync(51)
        await runtime.shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        database: DatabaseManager,
        gateway: ConnectorBase,
        feed: PaymentChangeFeed,
        notifier: NotificationService,
        reconciliation: ReconciliationService,
        monitor: StatusMonitor,
        payments: PaymentService,
    ):
        self.settings = settings
        self.database = database
        self.gateway = gateway
        self.feed = feed
        self.notifier = notifier
        self.reconciliation = reconciliation
        self.monitor = monitor
        self.payments = payments

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.database.session_factory

    @classmethod
    async def build(
        cls,
        settings: Optional[Settings] = None,
        gateway: Optional[ConnectorBase] = None,
        create_tables: bool = True,
    ) -> "ClinicRuntime":
        """Wire every component and start the monitor if configured to."""
        settings = settings or Settings.from_env()

        database = DatabaseManager(settings.database_url)
        await database.initialize(create_tables=create_tables)
        factory = database.session_factory

        gateway = gateway or build_gateway(settings)
        feed = PaymentChangeFeed()
        notifier = NotificationService(factory, smtp_config=settings.smtp)
        reconciliation = ReconciliationService(
            factory,
            notifier=notifier,
            feed=feed,
            settings=settings.reconciliation,
        )
        monitor = StatusMonitor(factory, reconciliation, feed=feed, settings=settings.monitor)
        payments = PaymentService(factory, gateway, reconciliation, currency=settings.paypal.currency)

        runtime = cls(settings, database, gateway, feed, notifier, reconciliation, monitor, payments)
        if settings.monitor.autostart:
            await monitor.start_monitoring()

        logger.info(f"Clinic payments runtime ready (gateway={gateway.name})")
        return runtime

    async def shutdown(self) -> None:
        self.monitor.stop_monitoring()
        await self.feed.drain()
        await self.gateway.close()
        await self.database.shutdown()
        logger.info("Clinic payments runtime shut down")
