"""
Wallet event publishing to Kafka.
"""
import json
import unittest
from unittest import mock
from confluent_kafka import KafkaException

from common.kafka import EventPublisher, TOPIC_WALLET_EVENTS
from common.tracing import get_trace_headers, ledger_tracer
from support import wallet_event


class TestEventPublisher(unittest.TestCase):

    def setUp(self):
        self.producer = mock.Mock()
        self.producer.flush.return_value = 0
        self.publisher = EventPublisher(TOPIC_WALLET_EVENTS, producer=self.producer)

    def test_publish_produces_json_keyed_by_transaction(self):
        self.assertTrue(self.publisher.publish(wallet_event(), key="tx-1"))

        args, kwargs = self.producer.produce.call_args
        self.assertEqual(args, (TOPIC_WALLET_EVENTS,))
        self.assertEqual(kwargs["key"], b"tx-1")
        payload = json.loads(kwargs["value"])
        self.assertEqual(payload["type"], "TransferCommitted")
        self.assertEqual(payload["amount"], "30.00")

    def test_active_trace_travels_with_the_event(self):
        with ledger_tracer.span("POST /transfers", trace_id="trace-1") as span:
            self.publisher.publish(wallet_event(), key="tx-1")

        headers = dict(self.producer.produce.call_args.kwargs["headers"])
        self.assertEqual(headers, {"X-Trace-ID": "trace-1", "X-Span-ID": span.span_id})
        self.assertEqual(get_trace_headers(), {})

    def test_disabled_publisher_never_touches_producer(self):
        publisher = EventPublisher(TOPIC_WALLET_EVENTS, producer=self.producer, enabled=False)
        self.assertFalse(publisher.publish(wallet_event()))
        self.producer.produce.assert_not_called()

    def test_failures_are_reported_not_raised(self):
        self.producer.produce.side_effect = KafkaException("broker down")
        self.assertFalse(self.publisher.publish(wallet_event()))

        self.producer.produce.side_effect = BufferError("queue full")
        self.assertFalse(self.publisher.publish(wallet_event()))

    def test_undelivered_messages_count_as_failure(self):
        self.producer.flush.return_value = 1
        self.assertFalse(self.publisher.publish(wallet_event()))


if __name__ == "__main__":
    unittest.main()
