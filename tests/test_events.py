"""
Tests for the event dispatcher and the publisher mixin
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from lending_core.events import (
    DomainEvent, EventPayload, EventDispatcher, EventPublisherMixin,
    get_global_dispatcher, set_global_dispatcher
)


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = EventPayload(
            event_type=DomainEvent.PAYMENT_APPLIED,
            entity_type="payment",
            entity_id="pmt-123",
            data={"total_amount": "900.00"}
        )

        assert event.entity_id == "pmt-123"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_to_dict(self):
        event = EventPayload(DomainEvent.LOAN_ORIGINATED, "loan", "loan-1", {"term_count": 45}, actor_id="u1")
        data = event.to_dict()

        assert data["event_type"] == "loan.originated"
        assert data["actor_id"] == "u1"
        assert data["data"] == {"term_count": 45}


class TestEventDispatcher:
    """Test publish/subscribe behaviour"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def test_subscribe_and_publish(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, handler)

        event = EventPayload(DomainEvent.PAYMENT_APPLIED, "payment", "p1", {})
        self.dispatcher.publish(event)
        self.dispatcher.publish(EventPayload(DomainEvent.LOAN_CANCELED, "loan", "l1", {}))

        handler.assert_called_once_with(event)

    def test_global_handler_sees_everything(self):
        received = []
        self.dispatcher.subscribe_all(received.append)

        self.dispatcher.publish(EventPayload(DomainEvent.LOAN_ORIGINATED, "loan", "l1", {}))
        self.dispatcher.publish(EventPayload(DomainEvent.PAYMENT_REVERSED, "payment", "p1", {}))
        assert [e.event_type for e in received] == [DomainEvent.LOAN_ORIGINATED, DomainEvent.PAYMENT_REVERSED]

    def test_failing_handler_is_isolated(self):
        failing = Mock(side_effect=RuntimeError("handler down"))
        healthy = Mock()
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, failing)
        self.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, healthy)

        self.dispatcher.publish(EventPayload(DomainEvent.PAYMENT_APPLIED, "payment", "p1", {}))

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_unsubscribe_and_counts(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_OVERDUE, handler)
        self.dispatcher.subscribe_all(Mock())
        assert self.dispatcher.get_handler_count(DomainEvent.LOAN_OVERDUE) == 1
        assert self.dispatcher.get_handler_count() == 2

        self.dispatcher.unsubscribe(DomainEvent.LOAN_OVERDUE, handler)
        self.dispatcher.unsubscribe(DomainEvent.LOAN_OVERDUE, handler)
        assert self.dispatcher.get_handler_count(DomainEvent.LOAN_OVERDUE) == 0

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0


class TestEventPublisherMixin:

    def test_publish_through_instance_dispatcher(self):
        class Service(EventPublisherMixin):
            pass

        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)

        service = Service()
        service.set_event_dispatcher(dispatcher)
        service.publish_event(DomainEvent.LOAN_CANCELED, "loan", "l1", {"reason": "x"}, actor_id="u1")

        assert len(received) == 1
        assert received[0].actor_id == "u1"

    def test_falls_back_to_global_dispatcher(self):
        class Service(EventPublisherMixin):
            pass

        previous = get_global_dispatcher()
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)
        set_global_dispatcher(dispatcher)
        try:
            Service().publish_event(DomainEvent.LOAN_PAID_OFF, "loan", "l1", {})
        finally:
            set_global_dispatcher(previous)

        assert len(received) == 1

    def test_publish_never_raises(self):
        class Service(EventPublisherMixin):
            pass

        broken = Mock()
        broken.publish.side_effect = RuntimeError("dispatcher down")
        service = Service()
        service.set_event_dispatcher(broken)

        service.publish_event(DomainEvent.PAYMENT_APPLIED, "payment", "p1", {})
        broken.publish.assert_called_once()
