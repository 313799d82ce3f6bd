# File: src/parking_ledger/infrastructure/messaging.py
"""
Messaging Infrastructure for the Parking Ledger

This module implements the post-commit side effects of ledger operations:
1. Event Bus - intra-process publish/subscribe of domain events
2. Notification Gateways - delivery of user notifications (log, Redis, RabbitMQ)
3. Notification Dispatcher - fire-and-forget delivery on a small worker pool
4. Event Handlers - turn ledger events into notifications

Notification delivery is best-effort: a gateway failure is logged and never
reaches the ledger operation that triggered it.

Supported Brokers:
- Redis Pub/Sub
- RabbitMQ
- Logging / in-memory (development and testing)
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Set
from datetime import datetime
import logging
import json
import threading
from dataclasses import dataclass, asdict, field
from enum import Enum
from uuid import UUID, uuid4
from concurrent.futures import ThreadPoolExecutor, Future, wait

import redis
import pika

from ..domain.models import (
    DomainEvent, EventType, VehicleAdmittedEvent, VehicleReleasedEvent
)


ENTRY_MESSAGE = "Vehicle registered successfully"
EXIT_MESSAGE_TEMPLATE = "Vehicle left the facility. Total cost: {cost}"


# ============================================================================
# MESSAGE TYPES
# ============================================================================

class MessageType(str, Enum):
    """Types of messages leaving the ledger"""
    DOMAIN_EVENT = "domain_event"
    NOTIFICATION = "notification"


@dataclass
class Message:
    """Base message class"""
    message_id: UUID = field(default_factory=uuid4)
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: Optional[str] = "parking-ledger"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary"""
        data = asdict(self)
        data['message_id'] = str(self.message_id)
        data['message_type'] = self.message_type.value
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        """Convert message to JSON string"""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class Notification(Message):
    """Notification about a vehicle's stay, addressed to one recipient"""
    recipient: Optional[str] = None
    license_plate: str = ""
    facility_name: str = ""
    body: str = ""

    def __post_init__(self):
        self.message_type = MessageType.NOTIFICATION

    @property
    def subject(self) -> str:
        return f"Parking notification for {self.license_plate}"


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handlers run synchronously in the publishing thread. A handler that
    raises is logged and skipped; publishing never fails.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type.value}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type.value}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.info(f"Publishing event: {event.event_type.value} (ID: {event.event_id})")

        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, []))

        for handler in handlers:
            if not handler.can_handle(event):
                continue
            try:
                handler.handle(event)
                self._logger.debug(f"Event handled by {handler.__class__.__name__}")
            except Exception as e:
                self._logger.error(
                    f"Error handling event {event.event_type.value} with {handler.__class__.__name__}: {e}"
                )

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        with self._lock:
            self._subscribers.clear()


# ============================================================================
# NOTIFICATION GATEWAYS
# ============================================================================

class NotificationGateway(ABC):
    """Delivers one notification; returns False or raises on failure"""

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        pass

    def close(self) -> None:
        """Release broker connections"""
        pass


class LoggingNotificationGateway(NotificationGateway):
    """Simulated email delivery: writes the notification to the log"""

    def send(self, notification: Notification) -> bool:
        self._logger.info(
            f"Email to {notification.recipient}: [{notification.subject}] "
            f"{notification.facility_name}: {notification.body}"
        )
        return True


class InMemoryNotificationGateway(NotificationGateway):
    """Collects notifications in memory (for testing)"""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self.sent: List[Notification] = []

    def send(self, notification: Notification) -> bool:
        with self._lock:
            self.sent.append(notification)
        return True

    def bodies(self) -> List[str]:
        with self._lock:
            return [n.body for n in self.sent]


class RedisNotificationGateway(NotificationGateway):
    """Publishes notifications to a Redis Pub/Sub channel"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        channel: str = "parking.notifications",
        timeout: float = 5.0
    ):
        super().__init__()
        self.redis_url = redis_url
        self.channel = channel
        self.redis_client = redis.Redis.from_url(
            redis_url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout
        )

    def send(self, notification: Notification) -> bool:
        receivers = self.redis_client.publish(self.channel, notification.to_json())
        self._logger.debug(
            f"Published notification {notification.message_id} to {self.channel} ({receivers} receivers)"
        )
        return True

    def close(self) -> None:
        self.redis_client.close()
        self._logger.info("Redis notification gateway closed")


class RabbitMQNotificationGateway(NotificationGateway):
    """Publishes notifications to a durable RabbitMQ queue"""

    def __init__(
        self,
        amqp_url: str = "amqp://localhost:5672",
        queue: str = "parking.notifications",
        timeout: float = 5.0
    ):
        super().__init__()
        self.amqp_url = amqp_url
        self.queue = queue

        self.connection_params = pika.URLParameters(amqp_url)
        self.connection_params.socket_timeout = timeout
        self.connection_params.blocked_connection_timeout = timeout

        # BlockingConnection is not thread-safe; dispatcher workers share it
        self._lock = threading.Lock()
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None

    def _ensure_connection(self) -> None:
        """Ensure RabbitMQ connection is established"""
        if not self._connection or self._connection.is_closed:
            self._connection = pika.BlockingConnection(self.connection_params)
            self._channel = self._connection.channel()
            self._channel.queue_declare(queue=self.queue, durable=True)
            self._logger.debug("RabbitMQ connection established")

    def send(self, notification: Notification) -> bool:
        with self._lock:
            self._ensure_connection()
            self._channel.basic_publish(
                exchange='',
                routing_key=self.queue,
                body=notification.to_json().encode('utf-8'),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Persistent
                    content_type='application/json',
                    message_id=str(notification.message_id),
                    timestamp=int(notification.timestamp.timestamp())
                )
            )

        self._logger.debug(f"Published notification {notification.message_id} to {self.queue}")
        return True

    def close(self) -> None:
        with self._lock:
            if self._connection and self._connection.is_open:
                self._connection.close()
            self._connection = None
            self._channel = None
        self._logger.info("RabbitMQ notification gateway closed")


class NotificationGatewayFactory:
    """Builds the notification gateway selected in settings"""

    BACKENDS = ("log", "redis", "rabbitmq", "memory", "none")

    @staticmethod
    def create(settings) -> Optional[NotificationGateway]:
        backend = settings.notification_backend

        if backend == "log":
            return LoggingNotificationGateway()
        if backend == "memory":
            return InMemoryNotificationGateway()
        if backend == "redis":
            return RedisNotificationGateway(
                redis_url=settings.redis_url,
                channel=settings.notification_channel,
                timeout=settings.notification_timeout_seconds
            )
        if backend == "rabbitmq":
            return RabbitMQNotificationGateway(
                amqp_url=settings.amqp_url,
                queue=settings.notification_channel,
                timeout=settings.notification_timeout_seconds
            )
        if backend == "none":
            return None

        raise ValueError(
            f"Unknown notification backend '{backend}', expected one of {', '.join(NotificationGatewayFactory.BACKENDS)}"
        )


# ============================================================================
# NOTIFICATION DISPATCHER
# ============================================================================

class NotificationDispatcher:
    """
    Fire-and-forget notification delivery

    notify() submits the delivery to a dedicated worker pool and returns the
    Future at once. The delivery task is its own failure channel: it logs
    exceptions and unsuccessful sends and resolves the Future to False.
    Nobody waits on it except flush(), which tests and shutdown use.
    """

    def __init__(
        self,
        gateway: NotificationGateway,
        recipient: str = "user@example.com",
        max_workers: int = 2
    ):
        self.gateway = gateway
        self.recipient = recipient
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def notify(self, license_plate: str, facility_name: str, message: str) -> Future:
        notification = Notification(
            recipient=self.recipient,
            license_plate=license_plate,
            facility_name=facility_name,
            body=message
        )

        future = self._executor.submit(self._deliver, notification)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _deliver(self, notification: Notification) -> bool:
        try:
            delivered = self.gateway.send(notification)
        except Exception as e:
            self._logger.warning(
                f"Notification for {notification.license_plate} failed: {e.__class__.__name__}: {e}"
            )
            return False

        if not delivered:
            self._logger.warning(f"Notification for {notification.license_plate} was not delivered")
            return False

        self._logger.debug(f"Notification {notification.message_id} delivered")
        return True

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight notifications; True if all finished in time"""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.gateway.close()


class NotificationEventHandler(EventHandler):
    """Turns admission and release events into user notifications"""

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher

    def can_handle(self, event: DomainEvent) -> bool:
        return isinstance(event, (VehicleAdmittedEvent, VehicleReleasedEvent))

    def handle(self, event: DomainEvent) -> None:
        if isinstance(event, VehicleAdmittedEvent):
            self.dispatcher.notify(event.license_plate, event.facility_name, ENTRY_MESSAGE)
        elif isinstance(event, VehicleReleasedEvent):
            message = EXIT_MESSAGE_TEMPLATE.format(cost=event.total_cost.format())
            self.dispatcher.notify(event.license_plate, event.facility_name, message)

    def register(self, event_bus: EventBus) -> None:
        event_bus.subscribe(EventType.VEHICLE_ADMITTED, self)
        event_bus.subscribe(EventType.VEHICLE_RELEASED, self)
