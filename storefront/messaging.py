from __future__ import annotations

import datetime as dt
import json
import logging

import pika

from . import config
from .logger import ErrorCode, log_error

logger = logging.getLogger(__name__)


def _connect() -> pika.BlockingConnection:
    params = pika.URLParameters(config.get_rabbitmq_url())
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    return pika.BlockingConnection(params)


def publish_event(routing_key: str, payload: dict) -> None:
    connection = _connect()
    try:
        ch = connection.channel()
        exchange = config.get_events_exchange()
        ch.exchange_declare(exchange=exchange, exchange_type="topic", durable=True)
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        ch.basic_publish(
            exchange=exchange,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistent
            ),
        )
    finally:
        connection.close()


def notify(routing_key: str, payload: dict) -> bool:
    """Publish an order event, best effort.

    Returns False when publishing is disabled or the broker is unreachable;
    the caller's state change has already been committed either way.
    """
    if not config.get_rabbitmq_url():
        logger.debug("RABBITMQ_URL not set, skipping %s", routing_key)
        return False
    event = {
        "event": routing_key,
        "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        **payload,
    }
    try:
        publish_event(routing_key, event)
        return True
    except Exception as e:
        log_error(ErrorCode.NOTIFICATION_SEND, f"{routing_key}: {type(e).__name__}")
        return False
