from __future__ import annotations
import re
import math
import json
import os
import time
import queue
import logging
import datetime
import threading
import dill
import jsonschema
from abc import abstractmethod
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Literal
from hashlib import md5

from jsonschema.exceptions import ValidationError
from prometheus_client import Counter, Gauge, Histogram


logger = logging.getLogger(__name__)

type ContextValue = None | str | bool | int | float
type Context = dict[str, ContextValue]
type DictDefinitions = dict[str, Any]
type Source = Literal["inactive-default", "override", "experiment", "segment", "rollout", "rollout-excluded", "fallback", "client"]

# 10000 buckets gives 0.01% rollout precision.
BUCKET_SPACE = 10000


class FlagNotFound(ValueError):
    pass


class InvalidSegmentCondition(ValueError):
    pass


class InvalidExperimentConfig(ValueError):
    pass


class AnalyticsSinkUnavailable(Exception):
    pass


def bucket(seed: str, space: int = BUCKET_SPACE) -> int:
    """
    Hashes the given seed to an integer in the range [0, space).

    The first 64 bits of the md5 digest of the utf-8 encoded seed are read as
    an unsigned big endian integer and reduced modulo space. Stability of this
    function is crucial: rollout and experiment assignments of every user
    depend on it, so it must give the same answer across processes, hosts and
    python versions.
    """
    if space <= 0:
        raise ValueError("bucket space must be positive")
    return (
        int.from_bytes(
            md5(seed.encode("utf-8")).digest()[:8],
            byteorder="big",  # Being explicit to survive default changes.
            signed=False,  # Being explicit to survive default changes.
        )
        % space
    )


def _unix_seconds_from_tz_time(s) -> float:
    """
    Parse the given ISO 8601 time string and return the number of seconds since
    the unix epoch.
    """
    t = datetime.datetime.fromisoformat(s)
    if t.tzinfo is None:
        raise ValueError("Timezone missing")
    return t.timestamp()


# Segment conditions


type _ParsedCondition = tuple[str, Any, Any]

def _literal_kind(v: Any) -> str | None:
    # bool must be tested before int since bool is a subclass of int.
    if isinstance(v, bool):
        return "bool"
    if isinstance(v, str):
        return "str"
    if isinstance(v, (int, float)):
        if isinstance(v, float) and not math.isfinite(v):
            return None
        return "num"
    return None


def _parse_condition(c: Any) -> _ParsedCondition:
    """
    Convert a JSON-like condition document into a parse tree. Each node is a
    tuple of three elements:

    1. The operator (AND, OR, EQ, IN, RANGE, REGEX)
    2. The list of operand nodes for AND/OR, otherwise the attribute name
    3. The literal for EQ, the set of values for IN, a (min, max) pair for
       RANGE, the compiled pattern for REGEX and None for AND/OR

    Raises InvalidSegmentCondition on any malformed node.
    """
    match c:
        case list():
            return _parse_bool_node("AND", c)
        case {"all": operands} if len(c) == 1:
            return _parse_bool_node("AND", operands)
        case {"any": operands} if len(c) == 1:
            return _parse_bool_node("OR", operands)
        case {"rule": str() as attr, "value": value} if len(c) == 2:
            # Shorthand: a list means membership, anything else equality.
            if isinstance(value, list):
                return _parse_leaf({"attribute": attr, "operator": "in", "value": value})
            return _parse_leaf({"attribute": attr, "operator": "equals", "value": value})
        case {"attribute": _, "operator": _}:
            return _parse_leaf(c)
        case _:
            raise InvalidSegmentCondition(f"malformed condition node {c!r}")


def _parse_bool_node(op: str, operands: Any) -> _ParsedCondition:
    if not isinstance(operands, list) or not operands:
        raise InvalidSegmentCondition(f"{op} expects a non-empty list of conditions")
    return (op, [_parse_condition(o) for o in operands], None)


def _parse_leaf(c: dict[str, Any]) -> _ParsedCondition:
    attr = c["attribute"]
    if not isinstance(attr, str) or not attr:
        raise InvalidSegmentCondition("attribute must be a non-empty string")
    op = c["operator"]
    rest = c.keys() - {"attribute", "operator"}
    match op:
        case "equals":
            if rest != {"value"}:
                raise InvalidSegmentCondition("equals expects exactly a 'value'")
            if _literal_kind(c["value"]) is None:
                raise InvalidSegmentCondition(f"cannot compare {attr} to {c['value']!r}")
            return ("EQ", attr, c["value"])
        case "in":
            values = c.get("value")
            if rest != {"value"} or not isinstance(values, list) or not values:
                raise InvalidSegmentCondition("in expects a non-empty 'value' list")
            kinds = set(_literal_kind(v) for v in values)
            if len(kinds) != 1 or kinds.pop() not in {"str", "num"} or any(isinstance(v, float) for v in values):
                raise InvalidSegmentCondition("set values must all be strings or all be integers")
            return ("IN", attr, frozenset(values))
        case "range":
            if not rest or rest - {"min", "max"}:
                raise InvalidSegmentCondition("range expects 'min' and/or 'max'")
            lo, hi = c.get("min"), c.get("max")
            for bound in (lo, hi):
                if bound is not None and _literal_kind(bound) != "num":
                    raise InvalidSegmentCondition(f"range bound {bound!r} is not a finite number")
            if lo is not None and hi is not None and lo >= hi:
                raise InvalidSegmentCondition("range min must be less than max")
            return ("RANGE", attr, (lo, hi))
        case "regex":
            if rest != {"value"} or not isinstance(c["value"], str):
                raise InvalidSegmentCondition("regex expects a string 'value'")
            try:
                pattern = re.compile(c["value"])
            except re.error as e:
                raise InvalidSegmentCondition(f"invalid regex {c['value']!r}: {e}") from e
            return ("REGEX", attr, pattern)
        case _:
            raise InvalidSegmentCondition(f"unknown operator {op!r}")


def _pythonize(n: _ParsedCondition, sets: list[frozenset], patterns: list[re.Pattern]) -> str:
    """
    Convert the parse tree into a python expression over `context`.

    Every leaf checks the type of the attribute before comparing it so the
    expression evaluates to False, rather than raising, when the attribute is
    missing or has an incompatible type.
    """
    op, arg1, arg2 = n
    match op:
        case "AND" | "OR":
            return f" {op.lower()} ".join(f"({_pythonize(a, sets, patterns)})" for a in arg1)
        case "EQ":
            match _literal_kind(arg2):
                case "bool":
                    return f"(context.get({arg1!r}) is {arg2!r})"
                case "str":
                    return f"(isinstance(context.get({arg1!r}), str) and context[{arg1!r}] == {arg2!r})"
                case _:
                    return f"({_is_number(arg1)} and context[{arg1!r}] == {arg2!r})"
        case "IN":
            sets.append(arg2)
            if isinstance(next(iter(arg2)), str):
                guard = f"isinstance(context.get({arg1!r}), str)"
            else:
                guard = f"isinstance(context.get({arg1!r}), int) and not isinstance(context[{arg1!r}], bool)"
            return f"({guard} and context[{arg1!r}] in sets[{len(sets) - 1}])"
        case "RANGE":
            lo, hi = arg2
            terms = [_is_number(arg1)]
            if lo is not None:
                terms.append(f"context[{arg1!r}] >= {lo!r}")
            if hi is not None:
                terms.append(f"context[{arg1!r}] < {hi!r}")
            return f"({' and '.join(terms)})"
        case "REGEX":
            patterns.append(arg2)
            return f"(isinstance(context.get({arg1!r}), str) and patterns[{len(patterns) - 1}].search(context[{arg1!r}]) is not None)"
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


def _is_number(attr: str) -> str:
    return f"(isinstance(context.get({attr!r}), (int, float)) and not isinstance(context[{attr!r}], bool))"


def _compile_condition(conditions: Any) -> Callable[[Context], bool]:
    pc = _parse_condition(conditions)
    sets: list[frozenset] = []
    patterns: list[re.Pattern] = []
    py_expr = _pythonize(pc, sets, patterns)
    code_str = f"""
def a(context):
    return {py_expr}
"""
    py_code = compile(code_str, "", "exec")
    _locals = {}
    exec(py_code, {"sets": sets, "patterns": patterns}, _locals)
    return _locals["a"]


def validate_segment_conditions(conditions: Any):
    """
    Validate a segment condition document. Meant to be called when a segment is
    written so malformed conditions never reach a snapshot. Raises
    InvalidSegmentCondition.
    """
    _compile_condition(conditions)


class CompiledSegment:
    __slots__ = ("id", "name", "type", "priority", "created_at", "match", "error")
    id: str
    name: str
    type: str
    priority: int
    # Seconds since the unix epoch, inf when unknown so undated segments
    # sort after dated ones of the same priority.
    created_at: float
    # None when the conditions failed to compile, in which case error holds
    # the reason.
    match: Callable[[Context], bool] | None
    error: str | None


def order_segments(segments: Iterable[CompiledSegment]) -> list[CompiledSegment]:
    """
    Order segments for matching: highest priority first, then earliest
    created, then by id.
    """
    return sorted(segments, key=lambda s: (-s.priority, s.created_at, s.id))


def match_segment(segments: Sequence[CompiledSegment], context: Context) -> CompiledSegment | None:
    """
    Return the first segment, in the given order, whose conditions hold for the
    context. Segments that cannot be evaluated are skipped.
    """
    for segment in segments:
        if segment.match is None:
            logger.debug("Skipping segment %s with invalid conditions: %s", segment.id, segment.error)
            continue
        try:
            matched = segment.match(context)
        except Exception:
            logger.exception("Error evaluating segment %s", segment.id)
            continue
        if matched:
            return segment
    return None


# Experiments


_running_statuses = frozenset({"ACTIVE", "RUNNING"})


class Variant:
    __slots__ = ("name", "value", "percentage")
    name: str
    value: Any
    percentage: float


class CompiledExperiment:
    __slots__ = ("id", "flag_id", "name", "status", "created_at", "start", "end", "variants", "_range_ends")
    id: str
    flag_id: str
    name: str
    status: str
    created_at: float
    start: float | None
    end: float | None
    variants: tuple[Variant, ...]
    # Exclusive upper bound of each variant's cumulative percentage range.
    _range_ends: tuple[float, ...]

    def is_running(self, now: float) -> bool:
        if self.status not in _running_statuses:
            return False
        if self.start is not None and now < self.start:
            return False
        if self.end is not None and now >= self.end:
            return False
        return True


def assign_variant(experiment: CompiledExperiment, user_id: str) -> Variant:
    """
    Assign the user to one of the experiment's variants. The assignment only
    depends on the experiment id, the user id and the variant weights so it is
    stable across calls and processes.
    """
    point = bucket(f"{experiment.id}:{user_id}") / (BUCKET_SPACE / 100)
    for end, variant in zip(experiment._range_ends, experiment.variants):
        if point < end:
            return variant
    # Percentages may sum to a hair under 100.
    return experiment.variants[-1]


with open(os.path.join(os.path.dirname(__file__), "definitions_schema.json")) as f:
    _definitions_schema = json.load(f)

_experiment_schema = {"$ref": "#/$defs/experiment", "$defs": _definitions_schema["$defs"]}


def _check_experiment_variants(e: dict[str, Any]):
    names = [v["name"] for v in e["variants"]]
    if len(set(names)) != len(names):
        raise InvalidExperimentConfig(f"experiment {e['id']} has duplicate variant names")
    total = sum(v["percentage"] for v in e["variants"])
    # Rounded so float error in e.g. 3 x 33.33 does not reject it.
    if round(abs(total - 100), 6) > 0.01:
        raise InvalidExperimentConfig(f"variant percentages of experiment {e['id']} must sum to 100, not {total}")


def validate_experiment(e: dict[str, Any]):
    """
    Validate an experiment record. Meant to be called when an experiment is
    created or updated. Raises InvalidExperimentConfig.
    """
    try:
        jsonschema.validate(e, _experiment_schema)
    except ValidationError as ve:
        raise InvalidExperimentConfig(ve.message) from ve
    try:
        _compile_experiment(e)
    except InvalidExperimentConfig:
        raise
    except ValueError as ve:
        # Dates without a timezone.
        raise InvalidExperimentConfig(str(ve)) from ve


def _compile_experiment(e: dict[str, Any]) -> CompiledExperiment:
    _check_experiment_variants(e)
    ce = CompiledExperiment()
    ce.id = e["id"]
    ce.flag_id = e["featureFlagId"]
    ce.name = e.get("name", "")
    ce.status = e["status"] if e.get("isActive", True) else "INACTIVE"
    ce.created_at = _unix_seconds_from_tz_time(e["createdAt"]) if "createdAt" in e else math.inf
    ce.start = _unix_seconds_from_tz_time(e["startDate"]) if e.get("startDate") else None
    ce.end = _unix_seconds_from_tz_time(e["endDate"]) if e.get("endDate") else None
    if ce.start is not None and ce.end is not None and ce.start >= ce.end:
        raise InvalidExperimentConfig(f"experiment {ce.id} must start before it ends")
    variants = []
    range_ends = []
    cumulative = 0.0
    for v in e["variants"]:
        variant = Variant()
        variant.name = v["name"]
        variant.value = v["value"]
        variant.percentage = v["percentage"]
        cumulative += v["percentage"]
        variants.append(variant)
        range_ends.append(cumulative)
    ce.variants = tuple(variants)
    ce._range_ends = tuple(range_ends)
    return ce


# Snapshot


class CompiledFlag:
    __slots__ = (
        "id",
        "key",
        "name",
        "value",
        "default",
        "is_active",
        "rollout_percentage",
        "user_ids",
        "segments",
        "experiments",
        "metadata",
    )
    id: str
    key: str
    name: str
    value: Any
    default: Any
    is_active: bool
    rollout_percentage: float
    user_ids: frozenset[str]
    # Ordered for matching, see order_segments.
    segments: tuple[CompiledSegment, ...]
    # Ordered by creation time.
    experiments: tuple[CompiledExperiment, ...]
    metadata: dict[str, Any]

    def running_experiment(self, now: float) -> CompiledExperiment | None:
        for e in self.experiments:
            if e.is_running(now):
                return e
        return None


def _compile_segment(s: dict[str, Any]) -> CompiledSegment:
    cs = CompiledSegment()
    cs.id = s["id"]
    cs.name = s.get("name", "")
    cs.type = s["type"]
    cs.priority = s.get("priority", 0)
    cs.created_at = _unix_seconds_from_tz_time(s["createdAt"]) if "createdAt" in s else math.inf
    try:
        cs.match = _compile_condition(s["conditions"])
        cs.error = None
    except InvalidSegmentCondition as e:
        logger.warning("Segment %s has invalid conditions and will never match: %s", cs.id, e)
        cs.match = None
        cs.error = str(e)
    return cs


class Snapshot:
    """
    Immutable, versioned view of all flag, segment and experiment definitions.
    """

    __slots__ = ("version", "created_at", "flags")
    version: int
    created_at: float
    flags: dict[str, CompiledFlag]

    @staticmethod
    def from_bytes(b: bytes) -> Snapshot:
        obj = dill.loads(b)
        assert isinstance(obj, Snapshot)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_dict(d: DictDefinitions, version: int = 1) -> Snapshot:
        """
        Compile the definitions document into a snapshot that can be installed
        into a SnapshotStore.
        """
        jsonschema.validate(d, _definitions_schema)

        flags_by_id: dict[str, CompiledFlag] = {}
        archived_ids: set[str] = set()
        flags: dict[str, CompiledFlag] = {}
        for f in d["flags"]:
            if f["id"] in flags_by_id or f["id"] in archived_ids:
                raise ValueError(f"duplicate flag id {f['id']}")
            if f.get("isArchived", False):
                archived_ids.add(f["id"])
                continue
            if f["key"] in flags:
                raise ValueError(f"duplicate flag key {f['key']}")
            flag = CompiledFlag()
            flag.id = f["id"]
            flag.key = f["key"]
            flag.name = f.get("name", f["key"])
            flag.value = f["value"]
            flag.default = f["defaultValue"]
            flag.is_active = f["isActive"]
            flag.rollout_percentage = f.get("rolloutPercentage", 100)
            flag.user_ids = frozenset(f.get("userIds", []))
            flag.metadata = f.get("metadata", {})
            segments = [_compile_segment(s) for s in f.get("segments", []) if s.get("isActive", True)]
            seen_segment_ids = set()
            for s in segments:
                if s.id in seen_segment_ids:
                    raise ValueError(f"duplicate segment id {s.id} in flag {flag.key}")
                seen_segment_ids.add(s.id)
            flag.segments = tuple(order_segments(segments))
            flags_by_id[flag.id] = flag
            flags[flag.key] = flag

        experiments_by_flag: dict[str, list[CompiledExperiment]] = defaultdict(list)
        seen_experiment_ids = set()
        for e in d.get("experiments", []):
            if e["id"] in seen_experiment_ids:
                raise ValueError(f"duplicate experiment id {e['id']}")
            seen_experiment_ids.add(e["id"])
            if e["featureFlagId"] in archived_ids:
                continue
            if e["featureFlagId"] not in flags_by_id:
                raise ValueError(f"experiment {e['id']} references unknown flag {e['featureFlagId']}")
            experiments_by_flag[e["featureFlagId"]].append(_compile_experiment(e))

        for flag in flags.values():
            experiments = sorted(experiments_by_flag.get(flag.id, []), key=lambda e: (e.created_at, e.id))
            active = [e.id for e in experiments if e.status in _running_statuses]
            if len(active) > 1:
                logger.warning("Flag %s has multiple active experiments %s, the earliest created wins", flag.key, active)
            flag.experiments = tuple(experiments)

        s = Snapshot()
        s.version = version
        s.created_at = time.time()
        s.flags = flags
        return s


_prom_snapshot_version = Gauge(
    "banderole_snapshot_version",
    "Version of the installed definitions snapshot",
)
_prom_refresh_failures = Counter(
    "banderole_snapshot_refresh_failures",
    "Failed attempts to refresh the definitions snapshot",
)


class SnapshotStore:
    """
    Holds the current snapshot. Reads are a plain attribute load and never
    block; installs are serialized among themselves.
    """

    def __init__(self, snapshot: Snapshot | None = None):
        self._install_mu = threading.Lock()
        self._snapshot = snapshot
        if snapshot is not None:
            _prom_snapshot_version.set(snapshot.version)

    @property
    def version(self) -> int:
        snapshot = self._snapshot
        return 0 if snapshot is None else snapshot.version

    def current(self) -> Snapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise RuntimeError("snapshot not installed")
        return snapshot

    def install(self, snapshot: Snapshot):
        with self._install_mu:
            cur = self._snapshot
            if cur is not None and snapshot.version <= cur.version:
                raise ValueError(f"snapshot version {snapshot.version} is not newer than installed version {cur.version}")
            self._snapshot = snapshot
        _prom_snapshot_version.set(snapshot.version)
        logger.info("Installed snapshot version %d with %d flags", snapshot.version, len(snapshot.flags))


class DefinitionSource:
    """
    The source of flag, segment and experiment definitions, typically backed by
    the persistence layer that owns them.
    """

    @abstractmethod
    def fetch(self) -> DictDefinitions: ...


class SnapshotRefresher:
    """
    Builds snapshots from a definition source and installs them into a store,
    either periodically (start) or on demand (refresh, notify). A failed
    refresh keeps the last installed snapshot.
    """

    def __init__(
        self,
        store: SnapshotStore,
        source: DefinitionSource,
        interval_seconds: float = 30,
        stale_after_failures: int = 3,
    ):
        self._store = store
        self._source = source
        self._interval_seconds = interval_seconds
        self._stale_after_failures = stale_after_failures
        self._refresh_mu = threading.Lock()
        self._consecutive_failures = 0
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def stale(self) -> bool:
        return self._consecutive_failures >= self._stale_after_failures

    def refresh(self) -> bool:
        """
        Fetch definitions and install a new snapshot. Returns whether a new
        snapshot was installed.
        """
        with self._refresh_mu:
            try:
                definitions = self._source.fetch()
                snapshot = Snapshot.from_dict(definitions, version=self._store.version + 1)
                self._store.install(snapshot)
            except Exception:
                self._consecutive_failures += 1
                _prom_refresh_failures.inc()
                logger.exception("Error refreshing snapshot, keeping version %d", self._store.version)
                if self.stale:
                    logger.warning(
                        "Serving stale snapshot version %d after %d consecutive refresh failures",
                        self._store.version,
                        self._consecutive_failures,
                    )
                return False
            self._consecutive_failures = 0
            return True

    def notify(self):
        """
        Request an immediate refresh from the background thread.
        """
        self._wake.set()

    def start(self):
        def _worker():
            while not self._stop.is_set():
                self.refresh()
                self._wake.wait(self._interval_seconds)
                self._wake.clear()

        self._thread = threading.Thread(target=_worker, daemon=True, name="banderole-refresh")
        self._thread.start()

    def stop(self):
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join()


# Usage recording


@dataclass(frozen=True, slots=True)
class Decision:
    flag_key: str
    value: Any
    source: Source
    variant: str | None = None
    experiment_id: str | None = None
    segment_id: str | None = None


@dataclass(frozen=True, slots=True)
class UsageEvent:
    flag_key: str
    user_id: str
    value: Any
    source: Source
    timestamp: float
    variant: str | None = None
    experiment_id: str | None = None
    segment_id: str | None = None
    context: dict[str, ContextValue] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class UsageSink:
    """
    The sink is responsible for storing usage events in an analytics system.
    """

    @abstractmethod
    def write(self, events: list[UsageEvent]) -> None: ...


_prom_dropped_events = Counter(
    "banderole_usage_events_dropped",
    "Usage events dropped before reaching the sink",
    labelnames=["reason"],
)

# Upper bound on how long the flush worker waits on the queue before checking
# whether it has been asked to stop.
_POLL_SECONDS = 0.1


class UsageRecorder:
    """
    Queues usage events and writes them to a sink in batches from a background
    thread. record never blocks and never raises: when the queue is full the
    event being recorded is dropped, and batches the sink keeps rejecting are
    dropped after max_attempts. Every drop is counted.
    """

    def __init__(
        self,
        sink: UsageSink,
        max_queue_size: int = 10000,
        batch_size: int = 500,
        flush_interval_seconds: float = 5.0,
        batch_timeout_seconds: float = 10.0,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._sink = sink
        self._queue: queue.Queue[UsageEvent] = queue.Queue(maxsize=max_queue_size)
        self._batch_size = batch_size
        self._flush_interval_seconds = flush_interval_seconds
        self._batch_timeout_seconds = batch_timeout_seconds
        self._max_attempts = max_attempts
        self._retry_backoff_seconds = retry_backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._dropped_mu = threading.Lock()
        self._dropped = 0
        self._record_mu = threading.Lock()
        self._stop = threading.Event()
        # Sink writes run on their own thread so a hung sink can be timed out.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="banderole-sink")
        self._worker = threading.Thread(target=self._run, daemon=True, name="banderole-usage")
        self._worker.start()

    @property
    def dropped(self) -> int:
        with self._dropped_mu:
            return self._dropped

    def _count_dropped(self, n: int, reason: str):
        with self._dropped_mu:
            self._dropped += n
        _prom_dropped_events.labels(reason=reason).inc(n)

    def record(self, event: UsageEvent):
        # Held across the stop check and the put so close cannot slip in
        # between and strand the event in the queue.
        with self._record_mu:
            if self._stop.is_set():
                self._count_dropped(1, "closed")
                return
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                self._count_dropped(1, "queue_full")

    def close(self, timeout: float | None = None):
        """
        Stop accepting events, flush what is queued and stop the worker. Events
        still queued when timeout expires are dropped and counted.
        """
        with self._record_mu:
            self._stop.set()
        self._worker.join(timeout)
        left = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            left += 1
        if left:
            logger.error("Dropping %d usage events still queued at close", left)
            self._count_dropped(left, "closed")

    def _next_batch(self) -> list[UsageEvent]:
        batch: list[UsageEvent] = []
        deadline = time.monotonic() + self._flush_interval_seconds
        while len(batch) < self._batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._queue.get(timeout=min(remaining, _POLL_SECONDS)))
            except queue.Empty:
                if self._stop.is_set():
                    break
        return batch

    def _run(self):
        while not (self._stop.is_set() and self._queue.empty()):
            batch = self._next_batch()
            if batch:
                self._flush(batch)
        self._executor.shutdown(wait=False)

    def _wait(self, future: Future):
        try:
            future.result(timeout=self._batch_timeout_seconds)
        except TimeoutError as e:
            if future.done():
                raise
            raise AnalyticsSinkUnavailable(f"sink write timed out after {self._batch_timeout_seconds}s") from e

    def _drop_failed(self, n: int):
        logger.error("Dropping %d usage events, sink unavailable", n)
        self._count_dropped(n, "sink_unavailable")

    def _flush(self, batch: list[UsageEvent]):
        backoff = self._retry_backoff_seconds
        future: Future | None = None
        for attempt in range(1, self._max_attempts + 1):
            # A write that timed out may still land, so it is waited on again
            # rather than submitted a second time.
            if future is None or (future.done() and future.exception() is not None):
                future = self._executor.submit(self._sink.write, batch)
            try:
                self._wait(future)
                return
            except Exception:
                logger.exception("Error writing %d usage events (attempt %d/%d)", len(batch), attempt, self._max_attempts)
            if attempt < self._max_attempts:
                self._stop.wait(backoff)
                backoff = min(backoff * 2, self._max_backoff_seconds)

        if future.done():
            if future.exception() is not None:
                self._drop_failed(len(batch))
            return
        logger.warning("Giving up waiting on a write of %d usage events", len(batch))

        def count_if_failed(f: Future):
            if f.cancelled() or f.exception() is not None:
                self._drop_failed(len(batch))

        future.add_done_callback(count_if_failed)


@dataclass
class UsageSummary:
    total_usages: int = 0
    unique_users: int = 0
    # (YYYY-MM-DD, count) in date order, UTC.
    usage_over_time: list[tuple[str, int]] = field(default_factory=list)
    variant_counts: dict[str, int] = field(default_factory=dict)
    # (variant, count, percentage of total_usages) ordered by variant name.
    variant_distribution: list[tuple[str, int, float]] = field(default_factory=list)
    source_counts: dict[str, int] = field(default_factory=dict)


def summarize_usage(
    events: Iterable[UsageEvent],
    flag_key: str | None = None,
    experiment_id: str | None = None,
    start: float | None = None,
    end: float | None = None,
) -> UsageSummary:
    """
    Aggregate usage events.

    flag_key: Only count events of this flag.
    experiment_id: Only count events attributed to this experiment. total_usages
        is then the number of participations in the experiment.
    start, end: Only count events with start <= timestamp <= end, in unix
        seconds.
    """
    summary = UsageSummary()
    users = set()
    per_day: dict[str, int] = defaultdict(int)
    variants: dict[str, int] = defaultdict(int)
    sources: dict[str, int] = defaultdict(int)
    for e in events:
        if flag_key is not None and e.flag_key != flag_key:
            continue
        if experiment_id is not None and e.experiment_id != experiment_id:
            continue
        if start is not None and e.timestamp < start:
            continue
        if end is not None and e.timestamp > end:
            continue
        summary.total_usages += 1
        users.add(e.user_id)
        day = datetime.datetime.fromtimestamp(e.timestamp, datetime.UTC).date().isoformat()
        per_day[day] += 1
        if e.variant is not None:
            variants[e.variant] += 1
        sources[e.source] += 1
    summary.unique_users = len(users)
    summary.usage_over_time = sorted(per_day.items())
    summary.variant_counts = dict(variants)
    summary.variant_distribution = [
        (name, count, count / summary.total_usages * 100) for name, count in sorted(variants.items())
    ]
    summary.source_counts = dict(sources)
    return summary


# Evaluation


_prom_eval_duration = Histogram(
    "banderole_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["flag", "source"],
)


class Evaluator:
    """
    The evaluator decides which value of a flag a user sees, using whatever
    snapshot the store holds at the start of the call, and hands every decision
    to the usage recorder. The evaluator is thread-safe.
    """

    def __init__(self, store: SnapshotStore, recorder: UsageRecorder | None = None):
        self._store = store
        self._recorder = recorder
        self._default_context_mu = threading.RLock()
        self._default_context: Context = {}

    def _get_default_context(self):
        with self._default_context_mu:
            ctx = self._default_context
        return ctx

    @staticmethod
    def _validate_context_type(context: Context):
        if not isinstance(context, dict):
            raise TypeError(f"context must be a dict, not {type(context).__name__}")
        for k, v in context.items():
            if not isinstance(k, str):
                raise TypeError(f"context key must be a string, not {type(k).__name__}")
            if not isinstance(v, (str, int, float, bool, type(None))):
                raise TypeError(f"context value must be a string, int, float, bool or None, not {type(v).__name__}")

    def set_default_context(self, context: Context = {}):
        """
        Set context values used for every evaluation. Values given to evaluate
        override these. Useful for values such as environment or region.
        set_default_context is thread-safe.
        """
        self._validate_context_type(context)
        context = dict(context)
        with self._default_context_mu:
            self._default_context = context

    def _merged_context(self, user_id: str, context: Context) -> Context:
        self._validate_context_type(context)
        if not isinstance(user_id, str):
            raise TypeError(f"user_id must be a string, not {type(user_id).__name__}")
        return {"__now": time.time(), **self._get_default_context(), **context}

    @staticmethod
    def _resolve(flag: CompiledFlag, user_id: str, context: Context) -> Decision:
        if not flag.is_active:
            return Decision(flag.key, flag.default, "inactive-default")

        if user_id in flag.user_ids:
            return Decision(flag.key, flag.value, "override")

        try:
            experiment = flag.running_experiment(context["__now"])
            if experiment is not None:
                variant = assign_variant(experiment, user_id)
                return Decision(flag.key, variant.value, "experiment", variant=variant.name, experiment_id=experiment.id)

            segment = match_segment(flag.segments, context)
            if segment is not None:
                return Decision(flag.key, flag.value, "segment", segment_id=segment.id)

            if bucket(f"{flag.key}:{user_id}") < flag.rollout_percentage * (BUCKET_SPACE / 100):
                return Decision(flag.key, flag.value, "rollout")
            return Decision(flag.key, flag.default, "rollout-excluded")
        except Exception:
            logger.exception("Error evaluating flag %s, serving the default value", flag.key)
            return Decision(flag.key, flag.default, "fallback")

    def _record(self, d: Decision, user_id: str, context: Context, metadata: dict[str, Any] | None = None):
        if self._recorder is None:
            return
        self._recorder.record(
            UsageEvent(
                flag_key=d.flag_key,
                user_id=user_id,
                value=d.value,
                source=d.source,
                timestamp=context["__now"],
                variant=d.variant,
                experiment_id=d.experiment_id,
                segment_id=d.segment_id,
                context={k: v for k, v in context.items() if k != "__now"},
                metadata=metadata or {},
            )
        )

    def evaluate_all(self, flag_keys: Iterable[str], user_id: str, context: Context = {}) -> dict[str, Decision]:
        """
        Evaluate all the given flags against the same snapshot. evaluate_all is
        thread-safe.
        """
        merged_context = self._merged_context(user_id, context)
        snapshot = self._store.current()

        decisions: dict[str, Decision] = {}
        for key in set(flag_keys):
            flag = snapshot.flags.get(key)
            if flag is None:
                raise FlagNotFound(f"Flag {key} does not exist in the snapshot")
            start = time.perf_counter()
            d = self._resolve(flag, user_id, merged_context)
            _prom_eval_duration.labels(flag=d.flag_key, source=d.source).observe(time.perf_counter() - start)
            decisions[key] = d

        for d in decisions.values():
            self._record(d, user_id, merged_context)
        return decisions

    def evaluate(self, flag_key: str, user_id: str, context: Context = {}) -> Decision:
        """
        Evaluate the given flag for a user. evaluate is thread-safe.

        flag_key: The key of the flag.
        user_id: The id of the user.
        context: Attributes of the user and request that segments match against.
        """
        return self.evaluate_all([flag_key], user_id, context)[flag_key]

    def record_usage(
        self,
        flag_key: str,
        user_id: str,
        variant: str | None = None,
        metadata: dict[str, Any] | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ):
        """
        Record usage of a flag observed by a client. If variant names a variant
        of the flag's running experiment, the event is attributed to that
        experiment. metadata["action"] defaults to "view"; user_agent and
        ip_address are kept in metadata when given.
        """
        merged_context = self._merged_context(user_id, {})
        flag = self._store.current().flags.get(flag_key)
        if flag is None:
            raise FlagNotFound(f"Flag {flag_key} does not exist in the snapshot")

        experiment_id = None
        value = None
        if variant is not None:
            for e in flag.experiments:
                if not e.is_running(merged_context["__now"]):
                    continue
                v = next((v for v in e.variants if v.name == variant), None)
                if v is not None:
                    experiment_id = e.id
                    value = v.value
                    break

        metadata = {"action": "view", **(metadata or {})}
        if user_agent is not None:
            metadata["user_agent"] = user_agent
        if ip_address is not None:
            metadata["ip_address"] = ip_address

        d = Decision(flag.key, value, "client", variant=variant, experiment_id=experiment_id)
        self._record(d, user_id, merged_context, metadata)
