import pytest

from govverifier.schema import CURRENT_SCHEMA_VERSION, current_version
from govverifier.store import (
    SnapshotMetaRecord,
    StakeAccountRecord,
    StakeAccountSummary,
    VoteAccountRecord,
    VoteAccountSummary,
    open_database,
)

SLOT = 340850340
WALLET = "AECaNinQ6ptWzZcD9WYFimvZuf37kuviUuNGGA4hgWDz"
VOTE = "Mvrzoe3cvKFyY8WqVa7Y4ZGnH3KTdEAcez7esRYY67r"
STAKE = "Fu12SHuZyaQ4B1or3hFRmx5gqLuGhxTWUjdH98oYRK2N"


@pytest.fixture
def conn():
    connection = open_database(":memory:")
    yield connection
    connection.close()


def _vote(account=VOTE, wallet=WALLET, network="testnet", slot=SLOT, stake=32615567722979):
    return VoteAccountRecord(
        network=network,
        snapshot_slot=slot,
        vote_account=account,
        voting_wallet=wallet,
        stake_merkle_root="DkSTcvau7xpiZBHHtUSg52utSqEH2qa2NRfBEAAz5fya",
        active_stake=stake,
        meta_merkle_proof=["ZVvsLpYErGY7dVZ9h5Wpugr5p5EJG31Jkv8NVo3ueYY"],
    )


def _stake(account=STAKE, wallet=WALLET, network="testnet", slot=SLOT, stake=9997717120):
    return StakeAccountRecord(
        network=network,
        snapshot_slot=slot,
        stake_account=account,
        vote_account=VOTE,
        voting_wallet=wallet,
        active_stake=stake,
        stake_merkle_proof=["2vQkMCm3ibpz8MMinkBPS8kt42TGgm6zdqUzrBG645iU"],
    )


def test_vote_record_round_trip(conn):
    record = _vote()
    record.insert(conn)
    assert VoteAccountRecord.get_by_account(conn, "testnet", VOTE, SLOT) == record


def test_vote_record_missing(conn):
    _vote().insert(conn)
    assert VoteAccountRecord.get_by_account(conn, "mainnet", VOTE, SLOT) is None
    assert VoteAccountRecord.get_by_account(conn, "testnet", VOTE, SLOT + 1) is None


def test_vote_insert_replaces(conn):
    _vote(stake=1).insert(conn)
    _vote(stake=2).insert(conn)
    summaries = VoteAccountRecord.summaries_by_voting_wallet(conn, "testnet", WALLET, SLOT)
    assert summaries == [VoteAccountSummary(VOTE, 2)]


def test_vote_summaries_sorted_and_filtered(conn):
    _vote(account="b").insert(conn)
    _vote(account="a").insert(conn)
    _vote(account="c", wallet="other").insert(conn)
    _vote(account="d", network="devnet").insert(conn)
    summaries = VoteAccountRecord.summaries_by_voting_wallet(conn, "testnet", WALLET, SLOT)
    assert [s.vote_account for s in summaries] == ["a", "b"]


def test_stake_record_round_trip(conn):
    record = _stake()
    record.insert(conn)
    assert StakeAccountRecord.get_by_account(conn, "testnet", STAKE, SLOT) == record


def test_stake_summaries(conn):
    _stake(account="z").insert(conn)
    _stake().insert(conn)
    summaries = StakeAccountRecord.summaries_by_voting_wallet(conn, "testnet", WALLET, SLOT)
    assert summaries == [
        StakeAccountSummary(STAKE, VOTE, 9997717120),
        StakeAccountSummary("z", VOTE, 9997717120),
    ]


def test_malformed_proof_reads_as_empty(conn):
    _stake().insert(conn)
    conn.execute("UPDATE stake_accounts SET stake_merkle_proof = 'not json'")
    record = StakeAccountRecord.get_by_account(conn, "testnet", STAKE, SLOT)
    assert record.stake_merkle_proof == []


def test_out_of_range_slot_rejected(conn):
    with pytest.raises(ValueError):
        _vote(slot=2**64 - 1).insert(conn)
    with pytest.raises(ValueError):
        StakeAccountRecord.summaries_by_voting_wallet(conn, "testnet", WALLET, -1)


def test_snapshot_meta_latest(conn):
    assert SnapshotMetaRecord.get_latest(conn, "testnet") is None
    assert SnapshotMetaRecord.get_latest_slot(conn, "testnet") is None
    older = SnapshotMetaRecord("testnet", 100, "root-a", "hash-a", "2024-01-01T00:00:00+00:00")
    newer = SnapshotMetaRecord("testnet", 200, "root-b", "hash-b", "2024-01-02T00:00:00+00:00")
    other = SnapshotMetaRecord("mainnet", 300, "root-c", "hash-c", "2024-01-03T00:00:00+00:00")
    for record in (newer, older, other):
        record.insert(conn)
    assert SnapshotMetaRecord.get_latest(conn, "testnet") == newer
    assert SnapshotMetaRecord.get_latest_slot(conn, "testnet") == newer.slot
    assert SnapshotMetaRecord.get_latest_slot(conn, "mainnet") == other.slot


def test_open_database_creates_file_and_persists(tmp_path):
    db_path = tmp_path / "nested" / "dir" / "governance.db"
    first = open_database(str(db_path))
    _vote().insert(first)
    first.close()
    assert db_path.is_file()

    second = open_database(str(db_path))
    try:
        assert current_version(second) == CURRENT_SCHEMA_VERSION
        assert second.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0] == 1
        assert VoteAccountRecord.get_by_account(second, "testnet", VOTE, SLOT) == _vote()
    finally:
        second.close()