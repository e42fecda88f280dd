import json
from typing import Optional
from uuid import uuid4

import aio_pika
import structlog

from storefront import config
from storefront.models import OrderStatus, utcnow

logger = structlog.get_logger(__name__)

ORDER_EXCHANGE = "order_exchange"

connection = None
channel = None


async def setup_rabbitmq(url: str = config.RABBITMQ_URL):
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(url)
        channel = await connection.channel()
        # Declare exchange for order events
        await channel.declare_exchange(ORDER_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete")
    except Exception as e:
        logger.error("Error setting up RabbitMQ, status events will not be published", error=str(e))


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if not channel:
        logger.warning("RabbitMQ channel not available, event dropped",
                       routing_key=routing_key, event_type=message_data.get("event_type"))
        return

    message = aio_pika.Message(
        json.dumps(message_data).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )
    exchange = await channel.get_exchange(exchange_name)
    await exchange.publish(message, routing_key=routing_key)
    logger.info("Published event", routing_key=routing_key, event_type=message_data["event_type"])


async def notify_status_change(customer_contact: str, order_id: str, new_status: OrderStatus,
                               tracking_ref: Optional[str] = None):
    """Tell the notification service an order changed status.

    Fire-and-forget: a failed publish is logged and never reaches the caller.
    """
    event = {
        "event_id": str(uuid4()),
        "event_type": "OrderStatusChanged",
        "timestamp": utcnow().isoformat(),
        "order_id": order_id,
        "customer_contact": customer_contact,
        "new_status": new_status.value,
        "tracking_number": tracking_ref,
    }
    try:
        await publish_event(ORDER_EXCHANGE, f"order.status.{new_status.value}", event)
    except Exception as e:
        logger.error("Error publishing status change", order_id=order_id,
                     new_status=new_status.value, error=str(e))
