"""
Engine Service

Main composite service that manages all storages, the broker and services.
Singleton pattern - one instance per process.
"""
import logging
from typing import Optional

from ..config import Config
from ..errors import BrokerUnavailable
from ..notifications.chat_sender import ChatSender
from ..notifications.email_sender import EmailSender
from ..notifications.push_sender import PushSender
from ..notifications.registry import ChannelDispatcher
from ..notifications.sms_sender import SmsSender
from ..notifications.webhook_sender import WebhookSender
from ..models.notification import NotificationChannel
from ..queue import QueueBroker, create_broker
from ..storage.batch_storage import BatchStorage
from ..storage.error_storage import NotificationErrorStorage
from ..storage.notification_storage import NotificationStorage
from ..storage.statistic_storage import StatisticStorage
from .batch_service import BatchService
from .confirmation import ConfirmationHandler, TimerConfirmation, WebhookConfirmation
from .dispatch_queue import PriorityDispatchQueue
from .error_ledger import ErrorLedger
from .events import EventBus
from .notification_service import NotificationService
from .state_machine import DeliveryStateMachine

logger = logging.getLogger("courier.services.engine")

# Singleton instance
_engine_service: Optional["EngineService"] = None


def build_dispatcher() -> ChannelDispatcher:
    """Register one sender per channel from Config"""
    dispatcher = ChannelDispatcher(send_timeout=Config.SEND_TIMEOUT)
    dispatcher.register(NotificationChannel.EMAIL, EmailSender(
        smtp_host=Config.SMTP_HOST,
        smtp_port=Config.SMTP_PORT,
        smtp_user=Config.SMTP_USER,
        smtp_password=Config.SMTP_PASSWORD,
        from_name=Config.SMTP_FROM_NAME,
        timeout=Config.SEND_TIMEOUT,
    ))
    dispatcher.register(NotificationChannel.SMS, SmsSender(
        account_sid=Config.TWILIO_ACCOUNT_SID,
        auth_token=Config.TWILIO_AUTH_TOKEN,
        from_number=Config.TWILIO_FROM_NUMBER,
    ))
    dispatcher.register(NotificationChannel.PUSH, PushSender(Config.FCM_SERVER_KEY))
    dispatcher.register(NotificationChannel.CHAT, ChatSender(Config.SLACK_BOT_TOKEN))
    dispatcher.register(NotificationChannel.WEBHOOK, WebhookSender(
        secret=Config.WEBHOOK_SECRET,
        timeout=Config.WEBHOOK_TIMEOUT,
    ))

    for name, configured in (
        ("email", bool(Config.SMTP_HOST)),
        ("sms", bool(Config.TWILIO_ACCOUNT_SID)),
        ("push", bool(Config.FCM_SERVER_KEY)),
        ("chat", bool(Config.SLACK_BOT_TOKEN)),
    ):
        if not configured:
            logger.info(f"{name} sender has no credentials; sends will fail as not configured")
    return dispatcher


class EngineService:
    """
    Composite engine service.

    Manages:
    - All storage connections (PostgreSQL)
    - The queue broker (inline or arq)
    - Delivery services and the periodic sweep
    - Graceful shutdown
    """

    def __init__(
        self,
        broker: Optional[QueueBroker] = None,
        dispatcher: Optional[ChannelDispatcher] = None,
        consume: bool = True,
    ):
        """Initialize engine service with all storages"""
        self.postgres_dsn = Config.get_postgres_dsn()
        self.consume = consume

        # Initialize storages
        self.notification_storage = NotificationStorage(self.postgres_dsn)
        self.error_storage = NotificationErrorStorage(self.postgres_dsn)
        self.batch_storage = BatchStorage(self.postgres_dsn)
        self.statistic_storage = StatisticStorage(self.postgres_dsn)

        # Broker and channel senders
        self.broker = broker or create_broker(
            Config.QUEUE_BROKER,
            redis_url=Config.REDIS_URL,
            queue_name=Config.QUEUE_NAME,
            run_worker=Config.QUEUE_CONSUME_IN_PROCESS,
            attempts=Config.MAX_RETRY_ATTEMPTS,
            backoff_ms=Config.BACKOFF_DELAY_MS,
        )
        self.dispatcher = dispatcher or build_dispatcher()

        # Delivery services
        self.event_bus = EventBus()
        self.error_ledger = ErrorLedger(self.error_storage)
        self.state_machine = DeliveryStateMachine(
            storage=self.notification_storage,
            error_ledger=self.error_ledger,
            statistic_storage=self.statistic_storage,
            event_bus=self.event_bus,
        )
        self.confirmation: ConfirmationHandler
        if Config.DELIVERY_CONFIRMATION == "webhook":
            self.confirmation = WebhookConfirmation(self.state_machine)
        else:
            self.confirmation = TimerConfirmation(
                self.state_machine, delay=Config.DELIVERY_CONFIRMATION_DELAY
            )

        self.dispatch_queue = PriorityDispatchQueue(
            storage=self.notification_storage,
            state_machine=self.state_machine,
            dispatcher=self.dispatcher,
            broker=self.broker,
            confirmation=self.confirmation,
            concurrency=Config.PROCESSING_CONCURRENCY,
            broker_attempts=Config.MAX_RETRY_ATTEMPTS,
            backoff_ms=Config.BACKOFF_DELAY_MS,
            sweep_interval=Config.SWEEP_INTERVAL,
            sweep_limit=Config.SWEEP_LIMIT,
            sweep_enabled=Config.SWEEP_ENABLED,
            stuck_timeout=Config.STUCK_PROCESSING_TIMEOUT,
        )
        self.notification_service = NotificationService(
            storage=self.notification_storage,
            state_machine=self.state_machine,
            dispatch_queue=self.dispatch_queue,
            error_ledger=self.error_ledger,
            statistic_storage=self.statistic_storage,
            event_bus=self.event_bus,
            default_max_attempts=Config.MAX_RETRY_ATTEMPTS,
        )
        self.batch_service = BatchService(
            batch_storage=self.batch_storage,
            notification_storage=self.notification_storage,
            dispatch_queue=self.dispatch_queue,
            state_machine=self.state_machine,
            concurrency=Config.PROCESSING_CONCURRENCY,
            batch_size=Config.BATCH_SIZE,
            channel_concurrency=Config.BATCH_CHANNEL_CONCURRENCY,
            collection_interval=Config.BATCH_COLLECTION_INTERVAL,
        )

        self._initialized = False
        logger.info(f"EngineService created (broker={self.broker.name})")

    async def initialize(self):
        """Initialize storages, open the broker and start dispatching"""
        if self._initialized:
            logger.info("EngineService already initialized")
            return

        logger.info("Initializing EngineService...")

        await self.notification_storage.init()
        await self.error_storage.init()
        await self.batch_storage.init()
        await self.statistic_storage.init()

        try:
            await self.broker.open()
        except BrokerUnavailable as e:
            # Creation keeps working; the sweep enqueues once the broker is back
            logger.error(f"Queue broker unavailable at startup: {e}")
        await self.dispatch_queue.start(consume=self.consume)
        if Config.BATCH_COLLECTION_ENABLED:
            await self.batch_service.start_collection()

        self._initialized = True
        logger.info("EngineService initialized successfully")

    async def close(self):
        """Close all connections"""
        logger.info("Closing EngineService...")

        await self.batch_service.stop_collection()
        await self.dispatch_queue.stop()
        await self.confirmation.close()
        await self.broker.close()
        await self.dispatcher.close()

        await self.notification_storage.close()
        await self.error_storage.close()
        await self.batch_storage.close()
        await self.statistic_storage.close()

        self._initialized = False
        logger.info("EngineService closed")

    @property
    def is_initialized(self) -> bool:
        """Check if service is initialized"""
        return self._initialized

    @classmethod
    def get_instance(cls) -> "EngineService":
        """Get singleton instance"""
        return get_engine_service()


def get_engine_service() -> EngineService:
    """Get or create engine service singleton"""
    global _engine_service
    if _engine_service is None:
        _engine_service = EngineService()
    return _engine_service


def set_engine_service(service: Optional[EngineService]):
    """Replace the singleton (worker processes and tests)"""
    global _engine_service
    _engine_service = service


async def init_engine_service() -> EngineService:
    """Initialize and return engine service"""
    service = get_engine_service()
    await service.initialize()
    return service
