import time
from datetime import datetime, timezone

import pytest

from datom_replication.cdc.bootstrap import bootstrap_destination
from datom_replication.cdc.checkpoint import read_source_t
from datom_replication.cdc.metrics import ReplicatorMetrics
from datom_replication.cdc.replicator import (
    Replicator,
    ReplicatorOptions,
    ReplicatorState,
)
from datom_replication.errors import (
    CommitError,
    ReplicationError,
    ReplicatorStateError,
    TransientCommitError,
    TranslationError,
)
from datom_replication.model import (
    PART_USER,
    SOURCE_EID,
    Assertion,
    AttributeDef,
    Cardinality,
    EntityIdentity,
    TempId,
    Transaction,
    ValueType,
)
from datom_replication.stores.memory import InMemoryDatomStore

INSTANT = datetime(2024, 6, 1, 8, 30, tzinfo=timezone.utc)

SCHEMA = (
    AttributeDef(":person/name", ValueType.STRING),
    AttributeDef(":person/friend", ValueType.REF, Cardinality.MANY),
)

FAST = ReplicatorOptions(poll_interval=0.01, transient_pause=0.01)


class RecordingSource:
    def __init__(self, inner):
        self._inner = inner
        self.reads = []

    def log_range(self, from_t, to_t=None):
        self.reads.append(from_t)
        return self._inner.log_range(from_t, to_t)

    def as_of(self, t):
        return self._inner.as_of(t)


class FlakyDestination:
    """Destination whose first ``failures`` data commits raise ``commit_error``.

    Errors queued in ``schema_errors`` are raised, one per call, by
    ``create_if_absent`` before it reaches the wrapped store.
    """

    def __init__(self, inner, failures=1, commit_error=None, schema_errors=()):
        self._inner = inner
        self.failures = failures
        self.commit_error = commit_error
        self.schema_errors = list(schema_errors)
        self.attempts = 0
        self.schema_attempts = 0

    def view(self):
        return self._inner.view()

    def create_if_absent(self, definitions, tx_instant=None):
        self.schema_attempts += 1
        if self.schema_errors:
            raise self.schema_errors.pop(0)
        return self._inner.create_if_absent(definitions, tx_instant)

    def commit(self, operations, tx_instant=None):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.commit_error or TransientCommitError("statement timeout")
        return self._inner.commit(operations, tx_instant)


def _stores():
    source = InMemoryDatomStore(clock=lambda: INSTANT)
    source.create_if_absent(SCHEMA)
    destination = InMemoryDatomStore()
    destination.create_if_absent(SCHEMA)
    return source, destination


def _add_friends(source):
    alice, bob = TempId(PART_USER, -1), TempId(PART_USER, -2)
    result = source.commit(
        [
            Assertion(alice, ":person/name", "Alice"),
            Assertion(bob, ":person/name", "Bob"),
            Assertion(alice, ":person/friend", bob),
        ]
    )
    return result.tempids[alice], result.tempids[bob]


def _replica(destination, source_eid):
    view = destination.view()
    eid = view.lookup(EntityIdentity(SOURCE_EID, source_eid))
    return eid, (view.entity(eid) if eid is not None else None)


@pytest.mark.unit
def test_replicates_log_and_rewrites_references(wait_until):
    source, destination = _stores()
    alice_src, bob_src = _add_friends(source)
    replicator = Replicator(source, destination, FAST)

    replicator.start()
    try:
        wait_until(lambda: read_source_t(destination.view()) == 2)
    finally:
        replicator.stop(timeout=2)

    alice, alice_entity = _replica(destination, alice_src)
    bob, bob_entity = _replica(destination, bob_src)
    assert alice_entity == {
        SOURCE_EID: alice_src,
        ":person/name": "Alice",
        ":person/friend": [bob],
    }
    assert bob_entity == {SOURCE_EID: bob_src, ":person/name": "Bob"}
    assert alice is not None and bob is not None
    assert replicator.state is ReplicatorState.STOPPED
    assert replicator.last_applied_t == 2
    assert replicator.wait(timeout=1) is True


@pytest.mark.unit
def test_destination_commits_carry_source_instants(wait_until):
    source, destination = _stores()
    _add_friends(source)
    replicator = Replicator(source, destination, FAST)

    replicator.start()
    try:
        wait_until(lambda: read_source_t(destination.view()) == 2)
    finally:
        replicator.stop(timeout=2)

    replicated = destination.log_range(2)
    assert replicated
    assert all(tx.instant == INSTANT for tx in replicated)


@pytest.mark.unit
def test_restart_resumes_one_past_checkpoint(wait_until):
    source, destination = _stores()
    alice_src, _ = _add_friends(source)
    first = Replicator(source, destination, FAST)
    first.start()
    try:
        wait_until(lambda: read_source_t(destination.view()) == 2)
    finally:
        first.stop(timeout=2)

    source.commit([Assertion(alice_src, ":person/name", "Alicia")])
    basis_before = destination.basis_t
    recording = RecordingSource(source)
    second = Replicator(recording, destination, FAST)
    second.start()
    try:
        wait_until(lambda: read_source_t(destination.view()) == 3)
    finally:
        second.stop(timeout=2)

    assert recording.reads[0] == 3
    # bootstrap is a no-op, so the only new destination commit is t=3's
    assert destination.basis_t == basis_before + 1
    _, alice_entity = _replica(destination, alice_src)
    assert alice_entity[":person/name"] == "Alicia"


@pytest.mark.unit
def test_explicit_start_t_overrides_checkpoint(wait_until):
    source, destination = _stores()
    _add_friends(source)
    recording = RecordingSource(source)
    replicator = Replicator(
        recording,
        destination,
        ReplicatorOptions(start_t=2, poll_interval=0.01),
    )

    replicator.start()
    try:
        wait_until(lambda: read_source_t(destination.view()) == 2)
    finally:
        replicator.stop(timeout=2)

    assert recording.reads[0] == 2


@pytest.mark.unit
def test_transient_failure_retries_same_transaction():
    source, destination = _stores()
    _add_friends(source)
    flaky = FlakyDestination(destination, failures=2)
    metrics = ReplicatorMetrics()
    replicator = Replicator(source, flaky, FAST, metrics=metrics)

    (tx,) = source.log_range(2)
    result = replicator.replicate(tx)

    assert result is not None
    assert flaky.attempts == 3
    assert read_source_t(destination.view()) == 2
    assert metrics.snapshot()["transient_retries_total"] == 2.0
    assert metrics.snapshot()["transactions_total"] == 1.0
    assert metrics.snapshot()["facts_total"] == 3.0


@pytest.mark.unit
def test_stop_during_transient_pause_leaves_transaction_unapplied(wait_until):
    source, destination = _stores()
    flaky = FlakyDestination(destination, failures=1000)
    metrics = ReplicatorMetrics()
    replicator = Replicator(
        source,
        flaky,
        ReplicatorOptions(poll_interval=0.01, transient_pause=30.0),
        metrics=metrics,
    )

    replicator.start()
    wait_until(lambda: metrics.snapshot()["transient_retries_total"] >= 1)
    started = time.monotonic()
    replicator.stop(timeout=5)

    assert time.monotonic() - started < 5
    assert replicator.state is ReplicatorState.STOPPED
    assert replicator.wait(timeout=1) is True
    assert replicator.error is None
    assert read_source_t(destination.view()) is None


@pytest.mark.unit
def test_bootstrap_timeout_is_retried_with_the_first_transaction():
    source, destination = _stores()
    _add_friends(source)
    flaky = FlakyDestination(
        destination,
        failures=0,
        schema_errors=[TransientCommitError("lock timeout")],
    )
    metrics = ReplicatorMetrics()
    replicator = Replicator(source, flaky, FAST, metrics=metrics)

    (tx,) = source.log_range(2)
    result = replicator.replicate(tx)

    assert result is not None
    # one failed call, then both bootstrap calls on the retry
    assert flaky.schema_attempts == 3
    assert flaky.attempts == 1
    assert read_source_t(destination.view()) == 2
    assert metrics.snapshot()["transient_retries_total"] == 1.0


@pytest.mark.unit
def test_bootstrap_rejection_stops_replicator(wait_until):
    source, destination = _stores()
    _add_friends(source)
    flaky = FlakyDestination(
        destination,
        failures=0,
        schema_errors=[CommitError("permission denied", kind="database")],
    )
    metrics = ReplicatorMetrics()
    replicator = Replicator(source, flaky, FAST, metrics=metrics)

    replicator.start()
    wait_until(lambda: replicator.state is ReplicatorState.STOPPED)

    with pytest.raises(CommitError):
        replicator.wait(timeout=1)
    assert flaky.schema_attempts == 1
    assert flaky.attempts == 0
    assert read_source_t(destination.view()) is None
    assert metrics.snapshot()["transient_retries_total"] == 0.0
    assert metrics.snapshot()["errors_total"] == 1.0


@pytest.mark.unit
def test_rejected_commit_stops_replicator_and_keeps_checkpoint(wait_until):
    source, destination = _stores()
    alice_src, _ = _add_friends(source)
    first = Replicator(source, destination, FAST)
    first.start()
    try:
        wait_until(lambda: read_source_t(destination.view()) == 2)
    finally:
        first.stop(timeout=2)

    source.commit([Assertion(alice_src, ":person/name", "Alicia")])
    flaky = FlakyDestination(
        destination,
        commit_error=CommitError("duplicate value", kind="unique-conflict"),
    )
    metrics = ReplicatorMetrics()
    second = Replicator(source, flaky, FAST, metrics=metrics)

    second.start()
    wait_until(lambda: second.state is ReplicatorState.STOPPED)

    with pytest.raises(CommitError) as excinfo:
        second.wait(timeout=1)
    assert excinfo.value.kind == "unique-conflict"
    assert second.error is excinfo.value
    assert flaky.attempts == 1
    assert read_source_t(destination.view()) == 2
    _, alice_entity = _replica(destination, alice_src)
    assert alice_entity[":person/name"] == "Alice"
    assert metrics.snapshot()["transient_retries_total"] == 0.0
    assert metrics.snapshot()["errors_total"] == 1.0


@pytest.mark.unit
def test_fatal_error_stops_replicator_and_keeps_checkpoint(wait_until):
    source, destination = _stores()
    source.create_if_absent([AttributeDef(":person/age", ValueType.LONG)])
    source.commit([Assertion(TempId(PART_USER, -1), ":person/age", 30)])
    metrics = ReplicatorMetrics()
    replicator = Replicator(source, destination, FAST, metrics=metrics)

    replicator.start()
    wait_until(lambda: replicator.state is ReplicatorState.STOPPED)

    with pytest.raises(TranslationError):
        replicator.wait(timeout=1)
    assert isinstance(replicator.error, TranslationError)
    assert read_source_t(destination.view()) == 2
    assert metrics.snapshot()["errors_total"] == 1.0


@pytest.mark.unit
def test_out_of_order_transaction_is_rejected():
    source, destination = _stores()
    replicator = Replicator(source, destination, FAST)

    replicator.replicate(Transaction(t=5, instant=INSTANT))

    with pytest.raises(ReplicationError):
        replicator.replicate(Transaction(t=5, instant=INSTANT))
    with pytest.raises(ReplicationError):
        replicator.replicate(Transaction(t=4, instant=INSTANT))
    assert read_source_t(destination.view()) == 5


@pytest.mark.unit
def test_bootstrap_runs_once_with_first_transaction_instant():
    source, destination = _stores()
    calls = []

    def recording_bootstrap(store, instant):
        calls.append(instant)
        return bootstrap_destination(store, instant)

    replicator = Replicator(
        source,
        destination,
        ReplicatorOptions(bootstrap=recording_bootstrap),
    )

    replicator.replicate(Transaction(t=1, instant=INSTANT))
    replicator.replicate(Transaction(t=2, instant=datetime(2030, 1, 1, tzinfo=timezone.utc)))

    assert calls == [INSTANT]


@pytest.mark.unit
def test_lifecycle_transitions():
    source, destination = _stores()
    replicator = Replicator(source, destination, FAST)
    assert replicator.state is ReplicatorState.CREATED

    replicator.stop()
    replicator.stop()

    assert replicator.state is ReplicatorState.STOPPED
    with pytest.raises(ReplicatorStateError):
        replicator.start()


@pytest.mark.unit
def test_start_twice_is_rejected():
    source, destination = _stores()
    replicator = Replicator(source, destination, FAST)
    replicator.start()
    try:
        with pytest.raises(ReplicatorStateError):
            replicator.start()
    finally:
        replicator.stop(timeout=2)

    assert replicator.state is ReplicatorState.STOPPED
