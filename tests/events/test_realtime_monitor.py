from agentflow.domain.models import WorkflowStatus
from agentflow.events.eventbus_model import EventLevel, EventType
from agentflow.events.monitor import WorkflowMonitor
from agentflow.events.realtime import EventSubscriber, RealTimeMonitor


def _setup():
    monitor = WorkflowMonitor()
    return monitor, RealTimeMonitor(monitor)


def test_run_subscribers_only_see_their_run():
    monitor, realtime = _setup()
    mine, everything = [], []
    realtime.subscribe("run-1", EventSubscriber(on_event=mine.append))
    realtime.subscribe_global(EventSubscriber(on_event=everything.append))

    monitor.start_monitoring("run-1", "tpl", 1)
    monitor.start_monitoring("run-2", "tpl", 1)

    assert [e.run_id for e in mine] == ["run-1"]
    assert [e.run_id for e in everything] == ["run-1", "run-2"]
    assert realtime.subscriber_count() == 2
    assert realtime.subscriber_count("run-1") == 1


def test_type_and_level_filters():
    monitor, realtime = _setup()
    failures, warnings = [], []
    realtime.subscribe("run-1", EventSubscriber(on_event=failures.append, event_types=[EventType.FAILED]))
    realtime.subscribe("run-1", EventSubscriber(on_event=warnings.append, event_levels=[EventLevel.WARN]))

    monitor.start_monitoring("run-1", "tpl", 1)
    monitor.update_execution("run-1", WorkflowStatus.PAUSED)
    monitor.update_execution("run-1", WorkflowStatus.FAILED)

    assert [e.type for e in failures] == [EventType.FAILED]
    assert [e.type for e in warnings] == [EventType.PAUSED]


def test_unsubscribe_and_broken_subscribers():
    monitor, realtime = _setup()
    received = []

    def broken(event):
        raise ValueError("bad subscriber")

    realtime.subscribe("run-1", EventSubscriber(on_event=broken))
    sub_id = realtime.subscribe("run-1", EventSubscriber(on_event=received.append))
    global_id = realtime.subscribe_global(EventSubscriber(on_event=received.append))

    monitor.start_monitoring("run-1", "tpl", 1)
    assert len(received) == 2

    assert realtime.unsubscribe(sub_id)
    assert realtime.unsubscribe(global_id)
    assert not realtime.unsubscribe(sub_id)

    monitor.update_execution("run-1", WorkflowStatus.COMPLETED)
    assert len(received) == 2
