"""Builds clients and use cases from the settings"""
import asyncio
import logging
from typing import Optional

from fulfillment.config import settings
from fulfillment.database import AsyncSessionLocal
from fulfillment.infrastructure.unit_of_work import UnitOfWork
from fulfillment.infrastructure.http_clients import (
    HTTPCatalogClient, HTTPLedgerClient, HTTPDeliveryClient, HTTPNotificationsClient,
)
from fulfillment.infrastructure.local_clients import LocalLedgerClient, LocalDeliveryClient, LoggingNotificationsClient
from fulfillment.infrastructure.kafka_producer import KafkaProducerClient
from fulfillment.infrastructure.kafka_consumer import KafkaConsumerClient
from fulfillment.infrastructure.queues import SQLQueueConsumer
from fulfillment.application.cancel_order import CancelOrderUseCase
from fulfillment.application.process_payment import ProcessPaymentUseCase
from fulfillment.application.saga_handlers import SagaHandlers

logger = logging.getLogger(__name__)

broker: Optional[KafkaProducerClient] = None
if settings.QUEUE_BACKEND == "kafka":
    broker = KafkaProducerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_TOPIC_PREFIX)


async def start_broker():
    if broker:
        await broker.start()


async def stop_broker():
    if broker:
        await broker.stop()


def make_unit_of_work(session_factory=AsyncSessionLocal) -> UnitOfWork:
    return UnitOfWork(session_factory)


def catalog_client():
    return HTTPCatalogClient(settings.CATALOG_BASE_URL, settings.API_TOKEN)


def ledger_client(uow):
    if settings.LEDGER_BASE_URL:
        return HTTPLedgerClient(
            settings.LEDGER_BASE_URL, settings.API_TOKEN,
            max_attempts=settings.LEDGER_MAX_ATTEMPTS, retry_delay=settings.LEDGER_RETRY_DELAY
        )
    return LocalLedgerClient(uow)


def delivery_client(uow):
    if settings.DELIVERY_BASE_URL:
        return HTTPDeliveryClient(settings.DELIVERY_BASE_URL, settings.API_TOKEN)
    return LocalDeliveryClient(uow)


def notifications_client():
    if settings.NOTIFICATIONS_BASE_URL:
        return HTTPNotificationsClient(settings.NOTIFICATIONS_BASE_URL, settings.API_TOKEN)
    return LoggingNotificationsClient()


def cancel_order_use_case(uow) -> CancelOrderUseCase:
    return CancelOrderUseCase(
        uow, ledger_client(uow), delivery_client(uow),
        stock_attempts=settings.STOCK_HOLD_ATTEMPTS, stock_retry_delay=settings.STOCK_RETRY_DELAY
    )


def saga_handlers(uow) -> SagaHandlers:
    ledger = ledger_client(uow)
    return SagaHandlers(
        uow,
        process_payment=ProcessPaymentUseCase(uow, ledger, settings.STORE_ACCOUNT),
        cancel_order=cancel_order_use_case(uow),
        delivery_service=delivery_client(uow),
        notifications_service=notifications_client(),
        warehouse_address=[settings.WAREHOUSE_ADDRESS],
        notification_url=settings.WEBHOOK_URL,
        delivery_failed_grace=settings.DELIVERY_FAILED_GRACE
    )


async def run_queue_worker(queue: str, handle, idle_sleep: float = 1.0, batch: int = 10):
    """Feeds messages of one queue to `handle` forever, from Kafka or from the queue table"""
    if settings.QUEUE_BACKEND == "kafka":
        consumer = KafkaConsumerClient(
            settings.KAFKA_BOOTSTRAP_SERVERS, broker.topic_for(queue), group_id=f"fulfillment-{queue}"
        )
        await consumer.start()
        try:
            await consumer.consume(handle)
        finally:
            await consumer.stop()
        return

    consumer = SQLQueueConsumer(AsyncSessionLocal, settings.QUEUE_VISIBILITY_TIMEOUT)
    while True:
        try:
            handled = await consumer.consume(queue, handle, limit=batch)
            if not handled:
                await asyncio.sleep(idle_sleep)
        except Exception as e:
            logger.error(f"Error consuming {queue}: {e}", exc_info=True)
            await asyncio.sleep(10)
