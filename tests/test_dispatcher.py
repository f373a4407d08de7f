"""Tests for per-subscriber fan-out."""
from conftest import NOW, FakeNotifier
from whalewatch.alerts.dispatcher import Dispatcher
from whalewatch.models import ChangeEvent, Resource, ResourceKind, SubscriberParams

TOKEN = Resource(ResourceKind.WHALE_TRANSFER, "So11111111111111111111111111111111111111112")
WALLET = Resource(ResourceKind.WALLET_BALANCE, "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU")


def whale_event(usd):
    return ChangeEvent(
        resource=TOKEN,
        event_type="whale_transfer",
        signature="tx:abc",
        metrics={
            "symbol": "SOL", "usd_value": usd, "amount": usd / 150,
            "sender": "senderAddress111", "receiver": "receiverAddress222",
            "transaction": "abc", "block_time": NOW.isoformat(),
        },
        detected_at=NOW,
    )


def anomaly_event():
    return ChangeEvent(
        resource=WALLET,
        event_type="wallet_anomaly",
        signature="anomaly",
        metrics={"total_value": 0, "previous_total": 10_000},
        low_confidence=True,
    )


async def test_thresholds_are_evaluated_per_subscriber():
    notifier = FakeNotifier()
    dispatcher = Dispatcher(notifier, {})
    subscribers = [
        SubscriberParams("small", enabled=True, threshold=1_000),
        SubscriberParams("big", enabled=True, threshold=1_000_000),
    ]

    delivered = await dispatcher.dispatch(whale_event(50_000), subscribers)

    assert [r.subscriber_id for r in delivered] == ["small"]
    assert notifier.recipients == ["small"]


async def test_disabled_subscriber_is_skipped():
    dispatcher = Dispatcher(FakeNotifier(), {})
    requests = dispatcher.build_requests(whale_event(50_000), [
        SubscriberParams("off", enabled=False, threshold=0),
        SubscriberParams("on", enabled=True, threshold=0),
    ])
    assert [r.subscriber_id for r in requests] == ["on"]


async def test_failed_delivery_does_not_affect_others():
    notifier = FakeNotifier(failing={"b"}, raising={"c"})
    dispatcher = Dispatcher(notifier, {})
    subscribers = [SubscriberParams(s, enabled=True, threshold=0) for s in ("a", "b", "c", "d")]

    delivered = await dispatcher.dispatch(whale_event(50_000), subscribers)

    assert sorted(r.subscriber_id for r in delivered) == ["a", "d"]
    assert dispatcher.stats["failed"] == 2
    assert dispatcher.stats["delivered"] == 2
    assert dispatcher.stats["requests"] == 4


async def test_anomaly_payload_has_no_delta():
    notifier = FakeNotifier()
    dispatcher = Dispatcher(notifier, {})
    await dispatcher.dispatch(anomaly_event(), [SubscriberParams("a", enabled=True)])

    (_, payload), = notifier.sent
    assert "%" not in payload
    assert "10.00K" not in payload


async def test_anomalies_can_be_muted():
    dispatcher = Dispatcher(FakeNotifier(), {"alerts": {"notify_anomalies": False}})
    assert dispatcher.build_requests(anomaly_event(), [SubscriberParams("a", enabled=True)]) == []


async def test_payload_rendered_once_per_event():
    calls = []

    def formatter(event):
        calls.append(event)
        return "text"

    dispatcher = Dispatcher(FakeNotifier(), {}, formatter=formatter)
    subscribers = [SubscriberParams(s, enabled=True) for s in ("a", "b", "c")]
    requests = dispatcher.build_requests(whale_event(10), subscribers)

    assert len(requests) == 3
    assert len(calls) == 1
    assert {r.payload for r in requests} == {"text"}
