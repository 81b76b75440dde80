import logging
import math

import numpy as np

import sim_engine
from sim_models import (
    BufferCapacityError,
    ProtocolError,
    ScheduleError,
    SimulationOutcome,
    SimulationRequest,
)


logger = logging.getLogger(__name__)

WIRE_DTYPE = np.dtype("<f8")

# Input buffer slots.
IN_INITIAL_DEBT = 0
IN_INITIAL_BALANCE = 1
IN_PAYMENT = 2
IN_MONTHLY_BUDGET = 3
IN_MONTHLY_RATE = 4
IN_YEARS = 5
IN_VOLATILITY = 6
IN_GROWTH = 7
IN_INFLATION = 8
IN_MARGIN_CALL_LTV = 9
IN_PATH_COUNT = 10
IN_SEED = 11
INPUT_BUFFER_SIZE = 16

NO_SEED = -1.0
MAX_EXACT_SEED = 2**53

# Output header and per-scenario block offsets.
OUT_STATUS = 0
OUT_SCENARIO_COUNT = 1
OUTPUT_HEADER_SIZE = 2

BLOCK_PAYMENT = 0
BLOCK_SURPLUS = 1
BLOCK_SURVIVAL_RATE = 2
BLOCK_MEDIAN = 3
BLOCK_P90 = 4
BLOCK_EXPECTED = 5
BLOCK_PERCENT_DIFF = 6
BLOCK_WEALTH_COUNT = 7
SCENARIO_FIELDS = 7
SCENARIO_HEADER_SIZE = SCENARIO_FIELDS + 1

STATUS_OK = 0.0
STATUS_UNIT_ERROR = 1.0
STATUS_CAPACITY_EXCEEDED = 2.0
STATUS_INVALID_REQUEST = 3.0

STATUS_LABELS = {
    STATUS_OK: "ok",
    STATUS_UNIT_ERROR: "unit error",
    STATUS_CAPACITY_EXCEEDED: "output capacity exceeded",
    STATUS_INVALID_REQUEST: "invalid request",
}


def _read_count(value, name):
    if not math.isfinite(value):
        raise ProtocolError(f"{name} field is not finite: {value!r}")
    count = int(round(value))
    if count < 0:
        raise ProtocolError(f"{name} field is negative: {count}")
    return count


def encode_request(request):
    if request.seed is not None and not (0 <= request.seed < MAX_EXACT_SEED):
        raise ValueError(f"seed must be in [0, 2**53) to cross the float64 boundary (got {request.seed}).")

    buffer = np.zeros(INPUT_BUFFER_SIZE, dtype=WIRE_DTYPE)
    buffer[IN_INITIAL_DEBT] = request.initial_debt
    buffer[IN_INITIAL_BALANCE] = request.initial_balance
    buffer[IN_PAYMENT] = request.payment
    buffer[IN_MONTHLY_BUDGET] = request.monthly_budget
    buffer[IN_MONTHLY_RATE] = request.monthly_rate
    buffer[IN_YEARS] = request.years
    buffer[IN_VOLATILITY] = request.volatility
    buffer[IN_GROWTH] = request.growth
    buffer[IN_INFLATION] = request.inflation
    buffer[IN_MARGIN_CALL_LTV] = request.margin_call_ltv
    buffer[IN_PATH_COUNT] = request.path_count
    buffer[IN_SEED] = NO_SEED if request.seed is None else request.seed
    return buffer


def decode_request(buffer):
    buffer = np.asarray(buffer, dtype=np.float64)
    if buffer.size < INPUT_BUFFER_SIZE:
        raise ProtocolError(
            f"Input buffer too short: expected {INPUT_BUFFER_SIZE} values, got {buffer.size}."
        )

    seed_value = float(buffer[IN_SEED])
    seed = None if seed_value < 0 else _read_count(seed_value, "seed")
    return SimulationRequest(
        initial_debt=float(buffer[IN_INITIAL_DEBT]),
        initial_balance=float(buffer[IN_INITIAL_BALANCE]),
        payment=float(buffer[IN_PAYMENT]),
        monthly_budget=float(buffer[IN_MONTHLY_BUDGET]),
        monthly_rate=float(buffer[IN_MONTHLY_RATE]),
        years=float(buffer[IN_YEARS]),
        volatility=float(buffer[IN_VOLATILITY]),
        growth=float(buffer[IN_GROWTH]),
        inflation=float(buffer[IN_INFLATION]),
        margin_call_ltv=float(buffer[IN_MARGIN_CALL_LTV]),
        path_count=_read_count(float(buffer[IN_PATH_COUNT]), "path count"),
        seed=seed,
    )


def output_capacity(path_count, scenario_count=1):
    return OUTPUT_HEADER_SIZE + int(scenario_count) * (SCENARIO_HEADER_SIZE + max(int(path_count), 0))


def allocate_output_buffer(path_count, scenario_count=1):
    return np.zeros(output_capacity(path_count, scenario_count), dtype=WIRE_DTYPE)


def required_size(outcomes):
    return OUTPUT_HEADER_SIZE + sum(SCENARIO_HEADER_SIZE + outcome.survivor_count for outcome in outcomes)


def write_status(buffer, status):
    if buffer.size < OUTPUT_HEADER_SIZE:
        raise BufferCapacityError(
            f"Output buffer cannot hold the {OUTPUT_HEADER_SIZE}-value header (size {buffer.size}).",
            status=STATUS_CAPACITY_EXCEEDED,
        )
    buffer[OUT_STATUS] = status
    buffer[OUT_SCENARIO_COUNT] = 0.0
    return OUTPUT_HEADER_SIZE


def write_outcomes(buffer, outcomes):
    """Write scenario blocks into ``buffer`` and return the element count.

    The full size is checked before anything past the header is touched; if
    the blocks do not fit, only a capacity-exceeded status is written.
    """
    outcomes = list(outcomes)
    needed = required_size(outcomes)
    if needed > buffer.size:
        return write_status(buffer, STATUS_CAPACITY_EXCEEDED)

    pos = OUTPUT_HEADER_SIZE
    for outcome in outcomes:
        count = outcome.survivor_count
        block = buffer[pos : pos + SCENARIO_HEADER_SIZE]
        block[BLOCK_PAYMENT] = outcome.payment_amount
        block[BLOCK_SURPLUS] = outcome.surplus_amount
        block[BLOCK_SURVIVAL_RATE] = outcome.survival_rate
        block[BLOCK_MEDIAN] = outcome.median_wealth
        block[BLOCK_P90] = outcome.p90_wealth
        block[BLOCK_EXPECTED] = outcome.expected_wealth
        block[BLOCK_PERCENT_DIFF] = outcome.benchmark_percent_diff
        block[BLOCK_WEALTH_COUNT] = count
        pos += SCENARIO_HEADER_SIZE
        buffer[pos : pos + count] = outcome.wealth
        pos += count

    buffer[OUT_STATUS] = STATUS_OK
    buffer[OUT_SCENARIO_COUNT] = len(outcomes)
    return pos


def read_status(buffer):
    buffer = np.asarray(buffer, dtype=np.float64)
    if buffer.size < OUTPUT_HEADER_SIZE:
        raise ProtocolError("Invalid buffer: missing header.")
    return float(buffer[OUT_STATUS])


def check_status(buffer):
    status = read_status(buffer)
    if status == STATUS_OK:
        return
    label = STATUS_LABELS.get(status, "unknown status")
    message = f"Compute unit reported status {status:g} ({label})."
    if status == STATUS_CAPACITY_EXCEEDED:
        raise BufferCapacityError(message, status=status)
    if status == STATUS_INVALID_REQUEST:
        raise ScheduleError(message)
    raise ProtocolError(message, status=status)


def read_outcomes(buffer):
    buffer = np.asarray(buffer, dtype=np.float64)
    check_status(buffer)
    scenario_count = _read_count(float(buffer[OUT_SCENARIO_COUNT]), "scenario count")

    outcomes = []
    pos = OUTPUT_HEADER_SIZE
    for scenario in range(scenario_count):
        if pos + SCENARIO_HEADER_SIZE > buffer.size:
            raise ProtocolError(f"Scenario block {scenario} header runs past the end of the buffer.")
        block = buffer[pos : pos + SCENARIO_HEADER_SIZE]
        count = _read_count(float(block[BLOCK_WEALTH_COUNT]), "wealth count")
        pos += SCENARIO_HEADER_SIZE
        if pos + count > buffer.size:
            raise ProtocolError(
                f"Scenario block {scenario} declares {count} wealth values but the buffer ends first."
            )
        outcomes.append(
            SimulationOutcome(
                payment_amount=float(block[BLOCK_PAYMENT]),
                surplus_amount=float(block[BLOCK_SURPLUS]),
                survival_rate=float(block[BLOCK_SURVIVAL_RATE]),
                median_wealth=float(block[BLOCK_MEDIAN]),
                p90_wealth=float(block[BLOCK_P90]),
                expected_wealth=float(block[BLOCK_EXPECTED]),
                benchmark_percent_diff=float(block[BLOCK_PERCENT_DIFF]),
                wealth=np.array(buffer[pos : pos + count], dtype=np.float64),
            )
        )
        pos += count
    return outcomes


def to_bytes(buffer, size=None):
    buffer = np.asarray(buffer, dtype=WIRE_DTYPE)
    if size is not None:
        buffer = buffer[:size]
    return np.ascontiguousarray(buffer).tobytes()


def from_bytes(raw):
    if len(raw) % WIRE_DTYPE.itemsize:
        raise ProtocolError(f"Byte payload length {len(raw)} is not a multiple of {WIRE_DTYPE.itemsize}.")
    return np.frombuffer(raw, dtype=WIRE_DTYPE).copy()


def execute_unit(input_buffer, output_buffer):
    """Compute-unit entry point: one request in, one scenario block out.

    Failures are reported through the status header rather than raised, so
    the receiving side can attribute them.
    """
    request = decode_request(input_buffer)
    try:
        schedule = sim_engine.generate_request_schedule(request)
    except ScheduleError:
        return write_status(output_buffer, STATUS_INVALID_REQUEST)

    try:
        outcome = sim_engine.simulate_request(request, schedule=schedule)
    except Exception:
        logger.exception("Simulation failed inside compute unit (payment %.2f).", request.payment)
        return write_status(output_buffer, STATUS_UNIT_ERROR)
    return write_outcomes(output_buffer, [outcome])
