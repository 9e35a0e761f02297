from datetime import datetime, timezone

import pytest

from datom_replication.errors import CommitError, SourceReadError
from datom_replication.model import (
    PART_USER,
    Assertion,
    AttributeDef,
    Cardinality,
    CheckpointUpdate,
    EntityDef,
    EntityIdentity,
    Fact,
    PartitionDef,
    Retraction,
    TempId,
    Uniqueness,
    ValueType,
    make_eid,
    partition_index,
)
from datom_replication.stores.memory import InMemoryDatomStore, _Stage

FIXED_INSTANT = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

PEOPLE_SCHEMA = (
    AttributeDef(":person/name", ValueType.STRING),
    AttributeDef(":person/email", ValueType.STRING, unique=Uniqueness.IDENTITY),
    AttributeDef(":person/friend", ValueType.REF, Cardinality.MANY),
    AttributeDef(":account/number", ValueType.LONG, unique=Uniqueness.VALUE),
)


def _people_store() -> InMemoryDatomStore:
    store = InMemoryDatomStore(clock=lambda: FIXED_INSTANT)
    store.create_if_absent(PEOPLE_SCHEMA)
    return store


def _new(index: int = -1) -> TempId:
    return TempId(PART_USER, index)


@pytest.mark.unit
def test_commit_allocates_entity_in_tempid_partition():
    store = _people_store()

    result = store.commit([Assertion(_new(), ":person/name", "Alice")])

    eid = result.tempids[_new()]
    assert result.t == 2
    assert partition_index(eid) == 2
    assert store.view().partition(eid) == PART_USER
    assert store.view().entity(eid) == {":person/name": "Alice"}


@pytest.mark.unit
def test_cardinality_one_assertion_retracts_previous_value_first():
    store = _people_store()
    eid = store.commit([Assertion(_new(), ":person/name", "Alice")]).tempids[_new()]

    store.commit([Assertion(eid, ":person/name", "Alicia")])

    aid = store.view().attribute(":person/name").id
    (tx,) = store.log_range(3)
    assert tx.facts == (
        Fact(eid, aid, "Alice", 3, False),
        Fact(eid, aid, "Alicia", 3, True),
    )
    assert store.view().entity(eid) == {":person/name": "Alicia"}
    assert store.as_of(2).entity(eid) == {":person/name": "Alice"}


@pytest.mark.unit
def test_cardinality_many_accumulates_values():
    store = _people_store()
    result = store.commit(
        [
            Assertion(_new(-1), ":person/name", "Alice"),
            Assertion(_new(-2), ":person/name", "Bob"),
            Assertion(_new(-3), ":person/name", "Carol"),
            Assertion(_new(-1), ":person/friend", _new(-2)),
            Assertion(_new(-1), ":person/friend", _new(-3)),
        ]
    )
    alice, bob, carol = (result.tempids[_new(i)] for i in (-1, -2, -3))

    assert sorted(store.view().entity(alice)[":person/friend"]) == sorted([bob, carol])


@pytest.mark.unit
def test_unique_identity_upserts_tempid_onto_existing_entity():
    store = _people_store()
    first = store.commit([Assertion(_new(), ":person/email", "a@example.com")])
    eid = first.tempids[_new()]

    second = store.commit(
        [
            Assertion(_new(-7), ":person/email", "a@example.com"),
            Assertion(_new(-7), ":person/name", "Ann"),
        ]
    )

    assert second.tempids[_new(-7)] == eid
    assert store.view().entity(eid) == {
        ":person/email": "a@example.com",
        ":person/name": "Ann",
    }


@pytest.mark.unit
def test_identity_pair_on_assertion_drives_upsert():
    store = _people_store()
    eid = store.commit([Assertion(_new(), ":person/email", "a@example.com")]).tempids[
        _new()
    ]

    result = store.commit(
        [
            Assertion(
                _new(-3),
                ":person/name",
                "Ann",
                identity=EntityIdentity(":person/email", "a@example.com"),
            )
        ]
    )

    assert result.tempids[_new(-3)] == eid


@pytest.mark.unit
def test_unique_value_conflict_rejects_whole_commit():
    store = _people_store()
    store.commit([Assertion(_new(), ":account/number", 7)])
    before_t = store.basis_t
    before_log = store.log_range(None)

    with pytest.raises(CommitError) as excinfo:
        store.commit(
            [
                Assertion(_new(-1), ":person/name", "Mallory"),
                Assertion(_new(-1), ":account/number", 7),
            ]
        )

    assert excinfo.value.kind == "unique-conflict"
    assert store.basis_t == before_t
    assert store.log_range(None) == before_log
    follow_up = store.commit([Assertion(_new(), ":person/name", "Eve")])
    assert follow_up.tempids[_new()] == make_eid(2, 2)


@pytest.mark.unit
@pytest.mark.parametrize(
    "operations, kind",
    [
        ([Assertion(TempId(PART_USER, -1), ":no/such", 1)], "unknown-attribute"),
        (
            [
                Assertion(TempId(PART_USER, -1), ":person/name", "x"),
                Assertion(TempId(PART_USER, -1), ":person/friend", TempId(PART_USER, -9)),
            ],
            "dangling-tempid",
        ),
        (
            [Retraction(EntityIdentity(":person/email", "ghost"), ":person/name", "x")],
            "unknown-entity",
        ),
        ([Assertion(TempId(":nowhere", -1), ":person/name", "x")], "unknown-partition"),
        ([CheckpointUpdate(source_t=5)], "missing-metadata"),
    ],
)
def test_rejected_commits_report_kind(operations, kind):
    store = _people_store()

    with pytest.raises(CommitError) as excinfo:
        store.commit(operations)

    assert excinfo.value.kind == kind
    assert store.basis_t == 1


@pytest.mark.unit
def test_ref_value_resolved_through_lookup_ref():
    store = _people_store()
    bob = store.commit([Assertion(_new(), ":person/email", "bob@example.com")]).tempids[
        _new()
    ]

    result = store.commit(
        [
            Assertion(_new(), ":person/name", "Alice"),
            Assertion(
                _new(), ":person/friend", EntityIdentity(":person/email", "bob@example.com")
            ),
        ]
    )

    alice = result.tempids[_new()]
    assert store.view().entity(alice)[":person/friend"] == [bob]


@pytest.mark.unit
def test_retraction_by_identity_removes_value():
    store = _people_store()
    eid = store.commit(
        [
            Assertion(_new(), ":person/email", "a@example.com"),
            Assertion(_new(), ":person/name", "Alice"),
        ]
    ).tempids[_new()]

    store.commit(
        [Retraction(EntityIdentity(":person/email", "a@example.com"), ":person/name", "Alice")]
    )

    assert store.view().entity(eid) == {":person/email": "a@example.com"}


@pytest.mark.unit
def test_create_if_absent_is_idempotent():
    store = InMemoryDatomStore()

    assert store.create_if_absent(PEOPLE_SCHEMA) == len(PEOPLE_SCHEMA)
    assert store.create_if_absent(PEOPLE_SCHEMA) == 0
    assert store.basis_t == 1
    assert [tx.t for tx in store.log_range(None)] == [1]


@pytest.mark.unit
def test_failed_schema_install_leaves_no_partial_definitions(monkeypatch):
    store = _people_store()
    basis_before = store.basis_t

    def reject(self, e, ident, value):
        raise CommitError(f"{ident} rejected", kind="unique-conflict")

    monkeypatch.setattr(_Stage, "assert_value", reject)
    with pytest.raises(CommitError):
        store.create_if_absent(
            [
                AttributeDef(":thing/label", ValueType.STRING),
                PartitionDef(":extra"),
                EntityDef(":thing/root"),
            ]
        )
    monkeypatch.undo()

    assert store.basis_t == basis_before
    assert store.view().attribute(":thing/label") is None
    assert store.create_if_absent([PartitionDef(":extra")]) == 1


@pytest.mark.unit
def test_unknown_partition_rolls_back_earlier_definitions():
    store = _people_store()

    with pytest.raises(CommitError) as excinfo:
        store.create_if_absent(
            [
                AttributeDef(":thing/label", ValueType.STRING),
                EntityDef(":thing/root", partition=":nowhere"),
            ]
        )

    assert excinfo.value.kind == "unknown-partition"
    assert store.view().attribute(":thing/label") is None
    assert store.basis_t == 1


@pytest.mark.unit
def test_as_of_hides_attributes_installed_later():
    store = _people_store()

    assert store.as_of(0).attribute(":person/name") is None
    assert store.as_of(1).attribute(":person/name").value_type is ValueType.STRING


@pytest.mark.unit
def test_log_range_is_end_exclusive_and_stamps_instants():
    store = _people_store()
    explicit = datetime(2020, 5, 6, tzinfo=timezone.utc)
    store.commit([Assertion(_new(), ":person/name", "A")], tx_instant=explicit)
    store.commit([Assertion(_new(), ":person/name", "B")])

    txs = store.log_range(2, 3)

    assert [tx.t for tx in txs] == [2]
    assert txs[0].instant == explicit
    assert store.log_range(3)[0].instant == FIXED_INSTANT


@pytest.mark.unit
def test_partition_of_unknown_entity_raises_source_read_error():
    store = _people_store()

    with pytest.raises(SourceReadError):
        store.view().partition(make_eid(99, 1))
