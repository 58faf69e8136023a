# workers/__init__.py
import logging

import dramatiq
from dramatiq.brokers.rabbitmq import RabbitmqBroker
from dramatiq.brokers.stub import StubBroker

from leasecycle.core.config import settings

logger = logging.getLogger(__name__)


def setup_broker() -> dramatiq.Broker:
    """RabbitMQ in production; the stub broker keeps tests and local runs offline."""
    if settings.DRAMATIQ_BROKER == "stub":
        broker = StubBroker()
    else:
        broker = RabbitmqBroker(url=settings.RABBITMQ_URL)
    dramatiq.set_broker(broker)
    logger.info(f"Dramatiq broker ready: {type(broker).__name__}")
    return broker


broker = setup_broker()

__all__ = ["broker", "setup_broker"]
