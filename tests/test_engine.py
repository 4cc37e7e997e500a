from __future__ import annotations

import math
import threading

import numpy as np
import pytest

from rssi_locator_server.models import EstimateMethod, Position, RejectReason


def _feed_all(engine, observe, rssi: int = -60, device_id: str = "dev-1") -> None:
    for station_id in ("A", "B", "C"):
        assert engine.ingest(observe(station_id, rssi, device_id=device_id))


def test_sub_threshold_reading_creates_no_device(make_engine, observe) -> None:
    engine = make_engine(min_rssi=-90)

    assert not engine.ingest(observe("A", -91))

    assert len(engine.store) == 0
    assert engine.pending_count == 0
    assert engine.stats.rejected[RejectReason.WEAK_SIGNAL] == 1


def test_unknown_station_is_dropped(make_engine, observe) -> None:
    engine = make_engine()

    assert not engine.ingest(observe("Z", -50))

    assert len(engine.store) == 0
    assert engine.stats.rejected[RejectReason.UNKNOWN_STATION] == 1


def test_implausible_distance_is_dropped(make_engine, observe) -> None:
    engine = make_engine(max_distance=5.0)

    # -80 dBm at -45 dBm/1 m with n=3 is roughly 14.7 m
    assert not engine.ingest(observe("A", -80))

    assert len(engine.store) == 0
    assert engine.stats.rejected[RejectReason.IMPLAUSIBLE_DISTANCE] == 1


def test_three_stations_produce_solved_estimate(
    make_engine, observe, calibrated_stations, least_squares_optimum
) -> None:
    engine = make_engine(calibrated_stations)
    subscription = engine.publisher.subscribe()
    _feed_all(engine, observe)

    estimates = engine.process_pending()

    assert len(estimates) == 1
    estimate = estimates[0]
    assert estimate.method is EstimateMethod.SOLVED
    assert estimate.contributing_stations == 3
    assert estimate.timestamp == 1_700_000_000.0
    distances = [r.distance for r in engine.store.snapshot_valid_readings("dev-1", engine.clock())]
    assert distances == pytest.approx([2.0, 3.0, 4.0])
    # first estimate is not smoothed
    assert estimate.position == estimate.raw_position
    expected = least_squares_optimum(np.array([[0.0, 0.0], [5.0, 0.0], [0.0, 5.0]]), np.array([2.0, 3.0, 4.0]))
    error = math.hypot(estimate.position.x - expected[0], estimate.position.y - expected[1])
    assert error <= engine.config.convergence_threshold
    assert subscription.drain() == [estimate]
    assert engine.store.get("dev-1").smoothed_position == estimate.position  # type: ignore[union-attr]


def test_two_stations_fall_back_to_centroid(make_engine, observe, calibrated_stations) -> None:
    engine = make_engine(calibrated_stations, min_stations=3)
    engine.ingest(observe("A", -60))
    engine.ingest(observe("B", -60))

    estimate = engine.solve_device("dev-1")

    assert estimate is not None
    assert estimate.method is EstimateMethod.CENTROID
    assert estimate.contributing_stations == 2
    # weights 1/2 and 1/3
    assert estimate.position.x == pytest.approx(2.0)
    assert estimate.position.y == pytest.approx(0.0)


def test_expired_readings_produce_no_estimate(make_engine, observe, clock) -> None:
    engine = make_engine(max_reading_age_secs=10.0)
    _feed_all(engine, observe)
    engine.process_pending()
    publisher_count = engine.publisher.published

    clock.advance(10.5)
    estimate = engine.solve_device("dev-1")

    assert estimate is None
    assert "dev-1" in engine.store
    assert engine.publisher.published == publisher_count
    assert engine.stats.empty_solves == 1


def test_unknown_device_produces_no_estimate(make_engine) -> None:
    assert make_engine().solve_device("nobody") is None


def test_refeeding_identical_reading_changes_nothing(make_engine, observe) -> None:
    engine = make_engine(smoothing_factor=0.5)
    observations = [observe(s, rssi) for s, rssi in (("A", -55), ("B", -62), ("C", -66))]
    for obs in observations:
        engine.ingest(obs)
    first = engine.process_pending()[0]

    for obs in observations:
        assert engine.ingest(obs)

    assert engine.pending_count == 0
    assert engine.stats.duplicates == 3
    second = engine.solve_device("dev-1")
    assert second is not None
    assert second.raw_position == first.raw_position


def test_zero_smoothing_publishes_raw_solution(make_engine, observe, clock) -> None:
    engine = make_engine(smoothing_factor=0.0)
    _feed_all(engine, observe, rssi=-60)
    engine.process_pending()

    clock.advance(1.0)
    engine.ingest(observe("A", -50))
    estimate = engine.process_pending()[0]

    assert estimate.position == estimate.raw_position


def test_unit_smoothing_freezes_first_position(make_engine, observe, clock) -> None:
    engine = make_engine(smoothing_factor=1.0)
    _feed_all(engine, observe, rssi=-60)
    first = engine.process_pending()[0]

    clock.advance(1.0)
    engine.ingest(observe("A", -50))
    engine.ingest(observe("C", -70))
    second = engine.process_pending()[0]

    assert second.raw_position != first.raw_position
    assert second.position == first.position


def test_smoothing_blends_with_previous_position(make_engine, observe, clock) -> None:
    engine = make_engine(smoothing_factor=0.25)
    _feed_all(engine, observe, rssi=-60)
    first = engine.process_pending()[0]

    clock.advance(1.0)
    engine.ingest(observe("A", -50))
    second = engine.process_pending()[0]

    assert second.position.x == pytest.approx(0.25 * first.position.x + 0.75 * second.raw_position.x)
    assert second.position.y == pytest.approx(0.25 * first.position.y + 0.75 * second.raw_position.y)


def test_pending_solves_are_coalesced_per_device(make_engine, observe, clock) -> None:
    engine = make_engine()
    for step in range(5):
        clock.advance(0.1)
        _feed_all(engine, observe, rssi=-60 - step)
    engine.ingest(observe("A", -60, device_id="dev-2"))

    assert engine.pending_count == 2
    estimates = engine.process_pending()

    assert sorted(e.device_id for e in estimates) == ["dev-1", "dev-2"]
    assert engine.pending_count == 0


def test_eviction_drops_pending_device(make_engine, observe, clock) -> None:
    engine = make_engine(max_reading_age_secs=1.0, idle_timeout_secs=2.0)
    engine.ingest(observe("A", -60))

    clock.advance(5.0)
    result = engine.reaper.run_once()

    assert result.evicted_devices == ["dev-1"]
    assert engine.pending_count == 0
    assert engine.stats.evicted_devices == 1
    assert engine.process_pending() == []


def test_worker_publishes_in_background(make_engine, observe) -> None:
    engine = make_engine()
    subscription = engine.publisher.subscribe()
    engine.start()
    try:
        _feed_all(engine, observe)
        estimate = subscription.get(timeout=5.0)
    finally:
        engine.stop(timeout=5.0)

    assert estimate is not None
    assert estimate.device_id == "dev-1"
    assert not engine.running
    assert not engine.reaper.running


def test_devices_snapshot(make_engine, observe) -> None:
    engine = make_engine()
    _feed_all(engine, observe)
    engine.process_pending()

    [device] = engine.devices_snapshot()

    assert device["device_id"] == "dev-1"
    assert set(device["readings"]) == {"A", "B", "C"}
    assert device["readings"]["A"]["rssi"] == -60
    assert device["last_seen"] == engine.clock()
    assert set(device["position"]) == {"x", "y"}


def test_estimate_wire_format(make_engine, observe) -> None:
    engine = make_engine()
    _feed_all(engine, observe)
    estimate = engine.process_pending()[0]

    event = estimate.to_dict()

    assert set(event) == {"device_id", "x", "y", "contributing_stations", "method", "timestamp"}
    assert event["method"] == "solved"
    assert math.isfinite(event["x"]) and math.isfinite(event["y"])


def test_stats_summary_mentions_counters(make_engine, observe) -> None:
    engine = make_engine()
    _feed_all(engine, observe)
    engine.process_pending()

    summary = engine.stats.summary()

    assert "accepted=3" in summary
    assert "solved=1" in summary
    engine.log_stats()


def test_position_of_device_on_station_is_stable(make_engine, observe) -> None:
    engine = make_engine()
    # strong signal at A, far from B and C
    engine.ingest(observe("A", -20))
    engine.ingest(observe("B", -66))
    engine.ingest(observe("C", -66))

    estimate = engine.process_pending()[0]

    assert estimate.method is EstimateMethod.SOLVED
    assert math.hypot(estimate.position.x, estimate.position.y) < 1.5
    assert isinstance(estimate.position, Position)


def test_reaper_purges_are_counted(make_engine, observe, clock) -> None:
    engine = make_engine(max_reading_age_secs=1.0, idle_timeout_secs=60.0)
    engine.ingest(observe("A", -60))
    clock.advance(0.5)
    engine.ingest(observe("B", -60))

    clock.advance(1.0)
    engine.reaper.run_once()

    assert engine.stats.purged_readings == 1
    assert engine.stats.evicted_devices == 0
    assert "purged=1" in engine.stats.summary()


def test_competing_position_write_is_smoothed_against(make_engine, observe, clock, monkeypatch) -> None:
    engine = make_engine(smoothing_factor=0.5)
    _feed_all(engine, observe)
    first = engine.process_pending()[0]
    clock.advance(1.0)
    engine.ingest(observe("A", -50))

    smooth = engine.smoother.smooth
    competing = Position(10.0, 10.0)
    seen = []

    def smooth_while_another_solve_lands(previous, raw):
        seen.append(previous)
        if len(seen) == 1:
            engine.store.update_smoothed_position("dev-1", competing)
        return smooth(previous, raw)

    monkeypatch.setattr(engine.smoother, "smooth", smooth_while_another_solve_lands)
    second = engine.process_pending()[0]

    assert seen == [first.position, competing]
    assert second.position.x == pytest.approx(0.5 * 10.0 + 0.5 * second.raw_position.x)
    assert second.position.y == pytest.approx(0.5 * 10.0 + 0.5 * second.raw_position.y)
    assert engine.store.get("dev-1").smoothed_position == second.position  # type: ignore[union-attr]


def test_different_devices_solve_concurrently(make_engine, observe) -> None:
    engine = make_engine()
    device_ids = [f"dev-{i}" for i in range(16)]
    for device_id in device_ids:
        _feed_all(engine, observe, device_id=device_id)
    barrier = threading.Barrier(len(device_ids))
    results = {}

    def solve(device_id: str) -> None:
        barrier.wait()
        results[device_id] = engine.solve_device(device_id)

    threads = [threading.Thread(target=solve, args=(d,)) for d in device_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10.0)

    assert sorted(results) == sorted(device_ids)
    positions = {results[d].position for d in device_ids}  # type: ignore[union-attr]
    # same readings everywhere, same answer everywhere
    assert len(positions) == 1
    assert engine.stats.estimates[EstimateMethod.SOLVED] == len(device_ids)
