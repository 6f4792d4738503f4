import logging

import pytest

from ble_localizer.errors import DuplicateAnchorError, LocatorError, UnknownAnchorError
from ble_localizer.models import DistanceParams, Position, SolverMethod
from ble_localizer.tracking_engine import TrackingEngine

from conftest import ANCHORS, distance_2d, rssi_for_distance

A1, A2, A3 = list(ANCHORS)


def _feed(engine, params, entity, target, timestamp=None):
    for mac, pos in ANCHORS.items():
        rssi = rssi_for_distance(distance_2d(pos, target), params)
        engine.ingest(mac, entity, rssi, timestamp)


def test_tracks_device_from_three_anchors(engine, params):
    _feed(engine, params, "phone", (3.0, 4.0))
    entity = engine.get_entity("phone")
    assert entity is not None
    assert entity.anchor_count == 3
    assert entity.position.x == pytest.approx(3.0, abs=1e-6)
    assert entity.position.y == pytest.approx(4.0, abs=1e-6)
    assert entity.floor == 0


def test_no_position_until_three_anchors(engine):
    engine.ingest(A1, "phone", -60)
    engine.ingest(A2, "phone", -65)
    entity = engine.get_entity("phone")
    assert entity.position is None
    assert entity.anchor_count == 2


def test_unknown_anchor_is_logged_and_ignored(engine, caplog):
    with caplog.at_level(logging.WARNING):
        assert engine.ingest("FF:FF:FF:FF:FF:FF", "phone", -60) is None
    assert engine.get_entity("phone") is None
    assert "FF:FF:FF:FF:FF:FF" in caplog.text


def test_unplaced_anchor_never_touches_entity(engine, params):
    engine.add_anchor("BB:BB:BB:BB:BB:BB")
    assert engine.ingest("BB:BB:BB:BB:BB:BB", "phone", -60) is None
    assert engine.get_entity("phone") is None

    _feed(engine, params, "phone", (3.0, 4.0))
    before = engine.get_entity("phone")
    samples_before = [s for s in before.samples]
    engine.ingest("bb:bb:bb:bb:bb:bb", "phone", -40)
    assert [s for s in engine.get_entity("phone").samples] == samples_before


def test_anchor_id_case_insensitive_on_ingest(engine):
    engine.ingest(A1.lower(), "phone", -60)
    assert engine.get_entity("phone").samples.latest(A1) is not None


def test_stale_samples_excluded_from_solve(engine, params, clock):
    _feed(engine, params, "phone", (3.0, 4.0))
    clock.advance(5000)
    # only one fresh sample now
    entity = engine.ingest(A1, "phone", -60)
    assert entity.position is None
    assert entity.anchor_count == 1


def test_sweep_expiry_thresholds(engine, clock):
    now = clock()
    engine.ingest(A1, "old", -60, timestamp=now - 31_000)
    engine.ingest(A1, "recent", -60, timestamp=now - 29_000)
    assert engine.sweep_expired(now) == ["old"]
    assert engine.get_entity("old") is None
    assert engine.get_entity("recent") is not None
    # idempotent
    assert engine.sweep_expired(now) == []


def test_last_seen_never_moves_backwards(engine, clock):
    now = clock()
    engine.ingest(A1, "phone", -60, timestamp=now)
    engine.ingest(A2, "phone", -60, timestamp=now - 10_000)
    assert engine.get_entity("phone").last_seen_at == now


def test_late_samples_do_not_revive_stale_ones(engine, clock):
    now = clock()
    engine.ingest(A1, "phone", -60, timestamp=now)
    engine.ingest(A2, "phone", -60, timestamp=now - 10_000)
    entity = engine.ingest(A3, "phone", -60, timestamp=now - 10_000)
    # freshness is judged against the newest sample, not the late one
    assert entity.position is None
    assert entity.anchor_count == 1


def test_extreme_rssi_does_not_raise(engine, params):
    _feed(engine, params, "phone", (3.0, 4.0))
    entity = engine.ingest(A3, "phone", -10000)
    assert entity is not None
    assert entity.samples.latest(A3).distance == float("inf")
    assert entity.position is None


def test_tick_respects_interval_and_enable(engine, clock):
    calls = []
    engine.on_refresh(lambda e: calls.append(len(e)))
    engine.ingest(A1, "phone", -60)

    assert engine.tick() is False  # disabled
    engine.enable()
    assert engine.tick() is False  # interval not reached
    clock.advance(31_000)
    assert engine.tick() is True
    assert calls == [0]

    engine.disable()
    clock.advance(5_000)
    assert engine.tick() is False
    engine.enable()
    clock.advance(1_000)
    assert engine.tick() is True
    assert calls == [0, 0]


def test_entities_and_anchors_by_floor(engine, params):
    engine.add_anchor("CC:00:00:00:00:01", floor=1)
    engine.add_anchor("CC:00:00:00:00:02", floor=1)
    engine.add_anchor("CC:00:00:00:00:03", floor=1)
    engine.set_anchor_position("CC:00:00:00:00:01", 0, 0, 1)
    engine.set_anchor_position("CC:00:00:00:00:02", 20, 0, 1)
    engine.set_anchor_position("CC:00:00:00:00:03", 0, 20, 1)

    _feed(engine, params, "ground", (3.0, 4.0))
    engine.ingest("CC:00:00:00:00:01", "upstairs", -60)

    assert [e.id for e in engine.entities_on(0)] == ["ground"]
    assert [e.id for e in engine.entities_on(1)] == ["upstairs"]
    assert len(engine.anchors_on(0)) == 3
    assert [a.id for a in engine.anchors_on(1)] == [
        "CC:00:00:00:00:01",
        "CC:00:00:00:00:02",
        "CC:00:00:00:00:03",
    ]


def test_remove_anchor_drops_samples(engine, params):
    _feed(engine, params, "phone", (3.0, 4.0))
    assert engine.remove_anchor(A2.lower()) is True
    assert engine.get_entity("phone").samples.latest(A2) is None
    assert engine.remove_anchor(A2) is False


def test_anchor_command_errors_propagate(engine):
    with pytest.raises(DuplicateAnchorError):
        engine.add_anchor(A1)
    with pytest.raises(UnknownAnchorError):
        engine.set_anchor_position("99:99:99:99:99:99", 1, 1, 0)


def test_place_next_unplaced(engine):
    assert engine.place_next_unplaced(1, 1, 0) is None
    engine.add_anchor("DD:00:00:00:00:01")
    engine.add_anchor("DD:00:00:00:00:02")
    placed = engine.place_next_unplaced(4.0, 5.0, 1)
    assert placed.id == "DD:00:00:00:00:01"
    assert placed.position == Position(4.0, 5.0)
    assert engine.registry.first_unplaced().id == "DD:00:00:00:00:02"


def test_clear_anchors(engine, params):
    _feed(engine, params, "phone", (3.0, 4.0))
    engine.clear_anchors()
    assert len(engine.registry) == 0
    assert len(engine.get_entity("phone").samples) == 0


def test_list_entities_filter_and_order(engine, clock):
    now = clock()
    engine.ingest(A1, "Pixel-7", -60, timestamp=now - 2000)
    engine.ingest(A1, "iPhone", -60, timestamp=now - 1000)
    engine.ingest(A1, "pixel-watch", -60, timestamp=now)
    assert [e.id for e in engine.list_entities("PIXEL")] == ["pixel-watch", "Pixel-7"]
    assert [e.id for e in engine.list_entities()] == ["pixel-watch", "iPhone", "Pixel-7"]


def test_distance_params_affect_future_samples(engine):
    engine.set_distance_params(-70, 2.0)
    engine.ingest(A1, "phone", -90)
    assert engine.get_entity("phone").samples.latest(A1).distance == pytest.approx(10.0)


def test_record_round_trip():
    source = TrackingEngine()
    source.add_anchor("a1", floor=1)
    source.set_anchor_position("A1", 1.0, 2.0, 1)
    source.add_anchor("A2")
    source.set_distance_params(-65, 3.0)
    record = source.to_record()
    assert record == {
        "anchors": [
            {"id": "A1", "floor": 1, "position": {"x": 1.0, "y": 2.0}},
            {"id": "A2", "floor": 0},
        ],
        "distance_params": {"reference_rssi": -65.0, "path_loss_exponent": 3.0},
    }

    target = TrackingEngine()
    target.load_record(record)
    assert target.to_record() == record


def test_load_record_tolerates_missing_fields():
    engine = TrackingEngine()
    engine.add_anchor("OLD")
    engine.load_record({"anchors": [{"id": "new"}]})
    assert [a.id for a in engine.registry.all()] == ["NEW"]
    assert engine.distance_model.params == DistanceParams()


def test_load_record_rejects_bad_params_without_changes(engine):
    before = engine.to_record()
    with pytest.raises(LocatorError):
        engine.load_record({"anchors": [{"id": "new"}], "distance_params": {"path_loss_exponent": 0}})
    assert engine.to_record() == before


def test_from_config(config_manager, tmp_path):
    config_manager.set_tracking_config(solver="least_squares", staleness_ms=2000, sweep_interval_s=0.5)
    config_manager.set_rssi_model_config(-70, 3.0)
    engine = TrackingEngine.from_config(config_manager)
    assert engine.solver.method is SolverMethod.LEAST_SQUARES
    assert engine.staleness_ms == 2000
    assert engine.sweep_interval_ms == 500
    assert engine.distance_model.params == DistanceParams(-70.0, 3.0)
    assert len(engine.registry) == 0


def test_from_config_unknown_solver_falls_back(config_manager):
    config_manager.set_tracking_config(solver="magic")
    engine = TrackingEngine.from_config(config_manager)
    assert engine.solver.method is SolverMethod.LINEARIZED
