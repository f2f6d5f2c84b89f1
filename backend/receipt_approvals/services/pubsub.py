import json
from typing import Dict

from google.cloud import pubsub_v1

from ..config import get_settings


_publisher = None


def _get_publisher() -> pubsub_v1.PublisherClient:
    global _publisher
    if _publisher is None:
        _publisher = pubsub_v1.PublisherClient()
    return _publisher


def publish_event(topic: str, message: Dict) -> None:
    """Publish a notification event (synchronous). Mail delivery subscribes downstream."""
    topic_path = _get_publisher().topic_path(get_settings().project_id, topic)
    data = json.dumps(message, default=str).encode("utf-8")
    future = _get_publisher().publish(topic_path, data, eventType=topic)
    future.result(timeout=30)
