from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from geofix.normalize.geo import GeoPoint
from geofix.pipeline.stage import GeoFixStage, StageState
from geofix.pipeline.stream import CollectingObserver, Stream, Subscription
from geofix.storage.models import Message


class RecordingPlugin:
    def __init__(self, log=None):
        self.events = log if log is not None else []

    def report_element_as_started(self, element_id):
        self.events.append(("started", element_id))

    def report_element_as_ended(self, element_id):
        self.events.append(("ended", element_id))

    def report_plugin_as_completed(self):
        self.events.append(("completed",))

    def report_plugin_as_errored(self):
        self.events.append(("errored",))


def _run(records, resolver, plugin=None, sink=None):
    plugin = plugin or RecordingPlugin()
    sink = sink or CollectingObserver()
    Stream.from_iterable(records).lift(GeoFixStage(plugin, resolver)).subscribe(sink)
    return plugin, sink


def test_end_to_end_scenario():
    records = [Message(id=1, latitude=None, longitude=None), Message(id=2, latitude=None, longitude=None)]
    table = {1: (10.0, 20.0)}
    plugin, sink = _run(records, lambda message: table.get(message.id))

    assert [(m.id, m.latitude, m.longitude) for m in sink.items] == [(1, 10.0, 20.0), (2, None, None)]
    assert plugin.events == [("started", 1), ("ended", 1), ("started", 2), ("ended", 2), ("completed",)]
    assert sink.completed
    assert sink.items[0] is records[0]
    assert sink.items[1] is records[1]


def test_valid_pair_sets_coordinates_and_keeps_id():
    record = SimpleNamespace(id="msg-7", latitude=None, longitude=None, text="ciao")
    _, sink = _run([record], lambda _record: GeoPoint(latitude=41.1, longitude=16.8))

    fixed = sink.items[0]
    assert fixed is record
    assert fixed.id == "msg-7"
    assert (fixed.latitude, fixed.longitude) == (41.1, 16.8)
    assert fixed.text == "ciao"


@pytest.mark.parametrize("resolved", [None, (), (1.0,), (1.0, 2.0, 3.0), [], "ab"])
def test_missing_or_malformed_pair_leaves_coordinates(resolved):
    latitude, longitude = 12.5, -0.0
    record = SimpleNamespace(id="m1", latitude=latitude, longitude=longitude)
    plugin, sink = _run([record], lambda _record: resolved)

    assert sink.items == [record]
    assert record.latitude is latitude
    assert record.longitude is longitude
    assert plugin.events == [("started", "m1"), ("ended", "m1"), ("completed",)]


def test_lifecycle_pairs_bracket_each_record_and_complete_before_downstream():
    log = []

    class OrderedSink(CollectingObserver):
        def on_next(self, value):
            log.append(("emitted", value.id))
            super().on_next(value)

        def on_completed(self):
            log.append(("downstream_completed",))
            super().on_completed()

    records = [Message(id=index) for index in range(1, 6)]
    _run(records, lambda _message: None, plugin=RecordingPlugin(log), sink=OrderedSink())

    expected = []
    for index in range(1, 6):
        expected += [("started", index), ("ended", index), ("emitted", index)]
    expected += [("completed",), ("downstream_completed",)]
    assert log == expected


def test_resolver_failure_on_kth_record():
    failure = RuntimeError("geocoder unavailable")
    resolved_ids = []

    def resolver(message):
        resolved_ids.append(message.id)
        if message.id == 3:
            raise failure
        return (1.0, 2.0)

    plugin, sink = _run([Message(id=index) for index in range(1, 6)], resolver)

    assert [m.id for m in sink.items] == [1, 2]
    assert resolved_ids == [1, 2, 3]
    assert plugin.events == [
        ("started", 1),
        ("ended", 1),
        ("started", 2),
        ("ended", 2),
        ("started", 3),
        ("errored",),
    ]
    assert sink.error is failure
    assert not sink.completed


def test_upstream_error_is_reported_and_forwarded_unchanged():
    failure = ValueError("broken feed")

    def records():
        yield Message(id=1)
        raise failure

    plugin, sink = _run(records(), lambda _message: None)

    assert [m.id for m in sink.items] == [1]
    assert plugin.events == [("started", 1), ("ended", 1), ("errored",)]
    assert sink.error is failure
    assert sink.signals == ["next", "error"]


def test_reporter_failure_becomes_stage_error():
    failure = ConnectionError("monitor offline")

    class FlakyPlugin(RecordingPlugin):
        def report_element_as_ended(self, element_id):
            raise failure

    plugin, sink = _run([Message(id=1), Message(id=2)], lambda _message: None, plugin=FlakyPlugin())

    assert sink.items == []
    assert sink.error is failure
    assert plugin.events == [("started", 1), ("errored",)]


def test_unresolved_records_are_left_untouched():
    records = [
        Message(id="a", text="hello", location="somewhere", extra_field={"nested": [1, 2]}),
        Message(id="b", latitude=3.0, longitude=4.0, source="feed"),
    ]
    before = [record.model_dump() for record in records]
    _, sink = _run(records, lambda _message: None)

    assert [record.model_dump() for record in sink.items] == before


def test_subclass_can_override_extension_point():
    class FixedStage(GeoFixStage):
        def get_coordinates(self, record):
            return [1.5, 2.5]

    plugin = RecordingPlugin()
    sink = CollectingObserver()
    Stream.from_iterable([Message(id=1)]).lift(FixedStage(plugin)).subscribe(sink)

    assert (sink.items[0].latitude, sink.items[0].longitude) == (1.5, 2.5)


def test_stage_requires_a_resolver():
    with pytest.raises(TypeError):
        GeoFixStage(RecordingPlugin())


def test_state_transitions():
    subscriber = GeoFixStage(RecordingPlugin(), lambda _message: None)(CollectingObserver())
    assert subscriber.state is StageState.IDLE
    subscriber.on_start()
    assert subscriber.state is StageState.ACTIVE
    subscriber.on_next(Message(id=1))
    assert subscriber.state is StageState.ACTIVE
    subscriber.on_error(RuntimeError("boom"))
    assert subscriber.state is StageState.ERRORED


def test_first_element_activates_stage_without_on_start():
    subscriber = GeoFixStage(RecordingPlugin(), lambda _message: None)(CollectingObserver())
    subscriber.on_next(Message(id=1))
    assert subscriber.state is StageState.ACTIVE


def test_signals_after_termination_are_ignored():
    plugin = RecordingPlugin()
    sink = CollectingObserver()
    subscriber = GeoFixStage(plugin, lambda _message: (1.0, 1.0))(sink)

    subscriber.on_start()
    subscriber.on_completed()
    subscriber.on_next(Message(id=9))
    subscriber.on_error(RuntimeError("late"))
    subscriber.on_completed()

    assert plugin.events == [("completed",)]
    assert sink.signals == ["completed"]
    assert subscriber.state is StageState.COMPLETED


def test_dispose_stops_resolution_and_reporting():
    subscription = Subscription()
    resolved_ids = []

    class DisposingSink(CollectingObserver):
        def on_next(self, value):
            super().on_next(value)
            if len(self.items) == 2:
                subscription.dispose()

    def resolver(message):
        resolved_ids.append(message.id)
        return None

    plugin = RecordingPlugin()
    sink = DisposingSink()
    source = Stream.from_iterable([Message(id=index) for index in range(1, 6)])
    source.lift(GeoFixStage(plugin, resolver)).subscribe(sink, subscription=subscription)

    assert resolved_ids == [1, 2]
    assert plugin.events == [("started", 1), ("ended", 1), ("started", 2), ("ended", 2)]
    assert [m.id for m in sink.items] == [1, 2]
    assert not sink.terminated


def test_dispose_during_resolution_skips_end_and_emit():
    holder = {}

    def resolver(_message):
        holder["subscriber"].dispose()
        return (1.0, 2.0)

    plugin = RecordingPlugin()
    sink = CollectingObserver()
    subscriber = GeoFixStage(plugin, resolver)(sink)
    holder["subscriber"] = subscriber

    subscriber.on_start()
    subscriber.on_next(Message(id=1))
    subscriber.on_completed()

    assert plugin.events == [("started", 1)]
    assert sink.signals == []
    assert subscriber.is_disposed


def test_message_id_is_read_only():
    message = Message(id=1)
    with pytest.raises(ValidationError):
        message.id = 2


def _run_chained(records, first_resolver, second_resolver, subscription=None, sink=None):
    first, second = RecordingPlugin(), RecordingPlugin()
    sink = sink or CollectingObserver()
    (
        Stream.from_iterable(records)
        .lift(GeoFixStage(first, first_resolver))
        .lift(GeoFixStage(second, second_resolver))
        .subscribe(sink, subscription=subscription)
    )
    return first, second, sink


def test_chained_stages_forward_resolver_error_to_sink():
    failure = RuntimeError("geocoder unavailable")

    def failing(_message):
        raise failure

    first, second, sink = _run_chained([Message(id=1), Message(id=2)], failing, lambda _message: None)

    assert first.events == [("started", 1), ("errored",)]
    assert second.events == [("errored",)]
    assert sink.error is failure
    assert sink.signals == ["error"]


def test_chained_stages_forward_upstream_error_to_sink():
    failure = ValueError("broken feed")

    def records():
        yield Message(id=1)
        raise failure

    first, second, sink = _run_chained(records(), lambda _message: None, lambda _message: (1.0, 2.0))

    assert first.events == [("started", 1), ("ended", 1), ("errored",)]
    assert second.events == [("started", 1), ("ended", 1), ("errored",)]
    assert [(m.id, m.latitude) for m in sink.items] == [(1, 1.0)]
    assert sink.error is failure
    assert sink.signals == ["next", "error"]


def test_disposing_chain_stops_every_stage():
    subscription = Subscription()

    class DisposingSink(CollectingObserver):
        def on_next(self, value):
            super().on_next(value)
            if len(self.items) == 2:
                subscription.dispose()

    records = [Message(id=index) for index in range(1, 6)]
    first, second, sink = _run_chained(
        records, lambda _message: None, lambda _message: None, subscription=subscription, sink=DisposingSink()
    )

    expected = [("started", 1), ("ended", 1), ("started", 2), ("ended", 2)]
    assert first.events == expected
    assert second.events == expected
    assert [m.id for m in sink.items] == [1, 2]
    assert not sink.terminated


def test_downstream_failure_on_next_becomes_stage_error():
    failure = OSError("disk full")

    class FullSink(CollectingObserver):
        def on_next(self, value):
            raise failure

    plugin, sink = _run([Message(id=1), Message(id=2)], lambda _message: None, sink=FullSink())

    assert plugin.events == [("started", 1), ("ended", 1), ("errored",)]
    assert sink.error is failure
    assert sink.signals == ["error"]


def test_errored_report_failure_still_forwards_original_error():
    failure = RuntimeError("geocoder unavailable")
    monitor_down = ConnectionError("monitor offline")

    class BrokenErrorPlugin(RecordingPlugin):
        def report_plugin_as_errored(self):
            super().report_plugin_as_errored()
            raise monitor_down

    def failing(_message):
        raise failure

    plugin = BrokenErrorPlugin()
    sink = CollectingObserver()
    with pytest.raises(ConnectionError) as excinfo:
        Stream.from_iterable([Message(id=1), Message(id=2)]).lift(GeoFixStage(plugin, failing)).subscribe(sink)

    assert excinfo.value is monitor_down
    assert sink.error is failure
    assert sink.signals == ["error"]
    assert plugin.events == [("started", 1), ("errored",)]
