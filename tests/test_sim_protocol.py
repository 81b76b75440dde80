from pathlib import Path
import sys

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import sim_engine
import sim_protocol as protocol
from sim_models import (
    BufferCapacityError,
    ProtocolError,
    ScheduleError,
    SimulationOutcome,
    SimulationRequest,
)


def _request(**overrides):
    params = {
        "initial_debt": 6_000.0,
        "initial_balance": 36_000.0,
        "payment": 120.5,
        "monthly_budget": 200.0,
        "monthly_rate": 0.07 / 12.0,
        "years": 5.0,
        "volatility": 0.15,
        "growth": 0.08,
        "inflation": 0.035,
        "margin_call_ltv": 0.60,
        "path_count": 400,
        "seed": 99,
    }
    params.update(overrides)
    return SimulationRequest(**params)


def _outcome(wealth, **overrides):
    params = {
        "payment_amount": 80.0,
        "surplus_amount": 120.0,
        "survival_rate": 75.0,
        "median_wealth": 2.0,
        "p90_wealth": 3.0,
        "expected_wealth": 2.25,
        "wealth": wealth,
    }
    params.update(overrides)
    return SimulationOutcome(**params)


def test_request_round_trip_preserves_fields():
    request = _request()
    buffer = protocol.encode_request(request)

    assert buffer.dtype == protocol.WIRE_DTYPE
    assert buffer.size == protocol.INPUT_BUFFER_SIZE
    assert protocol.decode_request(buffer) == request


def test_request_round_trip_without_seed():
    request = _request(seed=None)
    buffer = protocol.encode_request(request)

    assert buffer[protocol.IN_SEED] == protocol.NO_SEED
    assert protocol.decode_request(buffer).seed is None


def test_request_round_trip_through_bytes():
    request = _request()
    raw = protocol.to_bytes(protocol.encode_request(request))

    assert len(raw) == protocol.INPUT_BUFFER_SIZE * 8
    assert protocol.decode_request(protocol.from_bytes(raw)) == request


def test_decode_request_rounds_integer_fields():
    buffer = protocol.encode_request(_request())
    buffer[protocol.IN_PATH_COUNT] = 399.9999999

    assert protocol.decode_request(buffer).path_count == 400


def test_decode_request_rejects_short_buffer():
    with pytest.raises(ProtocolError):
        protocol.decode_request(np.zeros(4))


def test_encode_request_rejects_unrepresentable_seed():
    with pytest.raises(ValueError):
        protocol.encode_request(_request(seed=2**60))


def test_output_capacity_formula():
    assert protocol.output_capacity(0, 1) == 10
    assert protocol.output_capacity(1_000, 1) == 1_010
    assert protocol.output_capacity(1_000, 3) == 2 + 3 * 1_008


def test_outcome_round_trip_preserves_order_and_stats():
    outcome = _outcome([1.0, 2.0, 3.0])
    buffer = protocol.allocate_output_buffer(4, 1)

    written = protocol.write_outcomes(buffer, [outcome])
    assert written == 2 + 8 + 3
    assert buffer[protocol.OUT_STATUS] == protocol.STATUS_OK
    assert buffer[protocol.OUT_SCENARIO_COUNT] == 1

    (decoded,) = protocol.read_outcomes(buffer[:written])
    assert decoded.survival_rate == outcome.survival_rate
    assert decoded.median_wealth == outcome.median_wealth
    assert decoded.p90_wealth == outcome.p90_wealth
    assert decoded.expected_wealth == outcome.expected_wealth
    assert decoded.payment_amount == outcome.payment_amount
    assert decoded.surplus_amount == outcome.surplus_amount
    assert decoded.wealth.tolist() == [1.0, 2.0, 3.0]


def test_multiple_scenario_blocks_are_read_in_order():
    first = _outcome([1.0], payment_amount=10.0)
    second = _outcome([], payment_amount=20.0, survival_rate=0.0)
    third = _outcome([4.0, 5.0], payment_amount=30.0)
    buffer = protocol.allocate_output_buffer(2, 3)

    written = protocol.write_outcomes(buffer, [first, second, third])
    decoded = protocol.read_outcomes(buffer[:written])

    assert [item.payment_amount for item in decoded] == [10.0, 20.0, 30.0]
    assert [item.survivor_count for item in decoded] == [1, 0, 2]


def test_write_outcomes_reports_capacity_exceeded_without_overrun():
    buffer = np.full(protocol.output_capacity(2, 1), -7.0)
    written = protocol.write_outcomes(buffer, [_outcome([1.0, 2.0, 3.0])])

    assert written == protocol.OUTPUT_HEADER_SIZE
    assert buffer[protocol.OUT_STATUS] == protocol.STATUS_CAPACITY_EXCEEDED
    assert buffer[protocol.OUT_SCENARIO_COUNT] == 0
    assert np.all(buffer[protocol.OUTPUT_HEADER_SIZE :] == -7.0)
    with pytest.raises(BufferCapacityError):
        protocol.read_outcomes(buffer)


def test_write_status_requires_header_room():
    with pytest.raises(BufferCapacityError):
        protocol.write_status(np.zeros(1), protocol.STATUS_UNIT_ERROR)


@pytest.mark.parametrize(
    "status,error_type",
    [
        (protocol.STATUS_UNIT_ERROR, ProtocolError),
        (protocol.STATUS_CAPACITY_EXCEEDED, BufferCapacityError),
        (protocol.STATUS_INVALID_REQUEST, ScheduleError),
        (42.0, ProtocolError),
    ],
)
def test_check_status_maps_codes_to_errors(status, error_type):
    buffer = np.zeros(4)
    protocol.write_status(buffer, status)
    with pytest.raises(error_type):
        protocol.check_status(buffer)


def test_read_outcomes_rejects_truncated_block():
    buffer = protocol.allocate_output_buffer(3, 1)
    written = protocol.write_outcomes(buffer, [_outcome([1.0, 2.0, 3.0])])

    with pytest.raises(ProtocolError, match="buffer ends first"):
        protocol.read_outcomes(buffer[: written - 1])


def test_read_outcomes_rejects_missing_header():
    with pytest.raises(ProtocolError):
        protocol.read_outcomes(np.zeros(1))


def test_from_bytes_rejects_partial_values():
    with pytest.raises(ProtocolError):
        protocol.from_bytes(b"\x00" * 12)


def test_execute_unit_matches_direct_simulation():
    request = _request()
    output = protocol.allocate_output_buffer(request.path_count, 1)

    written = protocol.execute_unit(protocol.encode_request(request), output)
    (decoded,) = protocol.read_outcomes(output[:written])
    direct = sim_engine.simulate_request(request)

    assert written == protocol.OUTPUT_HEADER_SIZE + protocol.SCENARIO_HEADER_SIZE + direct.survivor_count
    assert decoded.survival_rate == direct.survival_rate
    assert decoded.expected_wealth == direct.expected_wealth
    assert np.array_equal(decoded.wealth, direct.wealth)


def test_execute_unit_reports_invalid_request_status():
    request = _request(monthly_budget=0.0)
    output = protocol.allocate_output_buffer(request.path_count, 1)

    written = protocol.execute_unit(protocol.encode_request(request), output)

    assert written == protocol.OUTPUT_HEADER_SIZE
    assert protocol.read_status(output) == protocol.STATUS_INVALID_REQUEST
    with pytest.raises(ScheduleError):
        protocol.read_outcomes(output)


def test_execute_unit_reports_capacity_status_for_undersized_buffer():
    request = _request(volatility=0.0, path_count=50)
    output = protocol.allocate_output_buffer(10, 1)

    written = protocol.execute_unit(protocol.encode_request(request), output)

    assert written == protocol.OUTPUT_HEADER_SIZE
    assert protocol.read_status(output) == protocol.STATUS_CAPACITY_EXCEEDED


def test_execute_unit_reports_unit_error_status_when_simulation_raises(monkeypatch):
    def failing_simulate_request(request, schedule=None, rng=None):
        raise FloatingPointError("overflow in balance update")

    monkeypatch.setattr(protocol.sim_engine, "simulate_request", failing_simulate_request)
    request = _request()
    output = protocol.allocate_output_buffer(request.path_count, 1)

    written = protocol.execute_unit(protocol.encode_request(request), output)

    assert written == protocol.OUTPUT_HEADER_SIZE
    assert protocol.read_status(output) == protocol.STATUS_UNIT_ERROR
    with pytest.raises(ProtocolError) as excinfo:
        protocol.read_outcomes(output)
    assert excinfo.value.status == protocol.STATUS_UNIT_ERROR
    assert not isinstance(excinfo.value, BufferCapacityError)
