"""
Tests for the indexing scheduler and its administrative operations.
"""

import asyncio

import pytest
from sqlalchemy import delete, func, select, update

from gmtea.core.config import Settings
from gmtea.core.exceptions import ProviderError, SchedulerError, UnknownSourceError, ValidationError
from gmtea.indexer.core.types import IndexerStatus
from gmtea.indexer.decoders import (
    BADGE_MINTED,
    CHECKIN_COMPLETED,
    REFERRAL_RECORDED,
    REWARD_ADDED,
    USERNAME_REGISTERED,
)
from gmtea.models.badge import Badge
from gmtea.models.checkin import Checkin
from gmtea.models.referral import Referral
from gmtea.models.sync_checkpoint import SyncCheckpoint
from gmtea.models.user import User
from gmtea.scheduler.main import build_indexing_scheduler
from gmtea.scheduler.task_scheduler import TaskScheduler
from gmtea.services.cache import InMemoryTTLCache
from gmtea.utils.formatters import utc_now
from tests.conftest import (
    ALICE,
    BADGE_CONTRACT,
    BOB,
    CAROL,
    CHECKIN_CONTRACT,
    DAVE,
    DEPLOY_BLOCK,
    REFERRAL_CONTRACT,
    USERNAME_CONTRACT,
    block_time,
    make_log,
    tx_hash,
)

SOURCE_ORDER = ["checkin", "badge", "username", "referral", "reward"]


@pytest.fixture
def config():
    return Settings(
        environment="test",
        checkin_contract_address=CHECKIN_CONTRACT,
        badge_contract_address=BADGE_CONTRACT,
        username_contract_address=USERNAME_CONTRACT,
        referral_contract_address=REFERRAL_CONTRACT,
        deploy_block=DEPLOY_BLOCK,
        webhook_url=None,
        cache_backend="memory",
    )


@pytest.fixture
def scheduler(config, session_scope, ledger, sink):
    return build_indexing_scheduler(config, session_scope, ledger=ledger, notifier=sink, cache=InMemoryTTLCache())


@pytest.fixture
def chain(ledger):
    """Bob refers Alice, Alice mints a badge with Bob as referrer, both check in."""
    ledger.height = 3000
    ledger.add(
        make_log(REFERRAL_RECORDED, REFERRAL_CONTRACT, 1050, tx_hash(1), referrer=BOB, referee=ALICE),
        make_log(BADGE_MINTED, BADGE_CONTRACT, 1100, tx_hash(2), to=ALICE, tokenId=1, tier=0, referrer=BOB),
        make_log(REWARD_ADDED, REFERRAL_CONTRACT, 1101, tx_hash(3), referrer=BOB, amount=10**17, tier=0),
        make_log(USERNAME_REGISTERED, USERNAME_CONTRACT, 1150, tx_hash(4), user=ALICE, username="Alice"),
        make_log(
            CHECKIN_COMPLETED, CHECKIN_CONTRACT, 1200, tx_hash(5),
            user=ALICE, timestamp=block_time(1200), message="gm", count=1,
        ),
        make_log(
            CHECKIN_COMPLETED, CHECKIN_CONTRACT, 1300, tx_hash(6),
            user=BOB, timestamp=block_time(1300), message="gm", count=1,
        ),
    )
    return ledger


async def _user(session_scope, address) -> User:
    async with session_scope() as db:
        return await db.get(User, address, populate_existing=True)


async def _checkpoints(session_scope):
    async with session_scope() as db:
        return (await db.execute(select(SyncCheckpoint))).scalars().all()


@pytest.mark.asyncio
async def test_cycle_indexes_every_source_then_reconciles_and_ranks(scheduler, session_scope, chain, sink):
    report = await scheduler.run_cycle()
    
    assert list(report.sources) == SOURCE_ORDER
    assert report.errors == {}
    assert report.reconciled == 2
    assert report.ranks_changed == 2
    
    alice = await _user(session_scope, ALICE)
    bob = await _user(session_scope, BOB)
    # Alice's check-in was indexed before her earlier badge mint and is re-tiered
    assert (alice.checkin_points, alice.badge_points, alice.other_points, alice.points) == (11, 20, 50, 81)
    assert (bob.points, bob.rank, alice.rank) == (60, 2, 1)
    assert alice.username == "alice"
    assert alice.referrer == BOB
    assert bob.pending_rewards == pytest.approx(0.1)
    
    checkpoints = await _checkpoints(session_scope)
    assert len(checkpoints) == 5
    assert all(c.last_processed_block == 3000 and not c.is_syncing for c in checkpoints)
    assert {"checkin", "badge-mint", "username", "referral", "reward-added"} <= set(sink.types())


@pytest.mark.asyncio
async def test_event_bus_subscribers_see_what_the_sink_sees(scheduler, chain, sink):
    received = []

    async def observer(event_type, addresses, payload):
        received.append((event_type, addresses))

    async def broken(event_type, addresses, payload):
        raise RuntimeError("observer down")

    scheduler.events.subscribe(broken)
    scheduler.events.subscribe(observer)
    report = await scheduler.run_cycle()

    assert report.errors == {}
    assert [event_type for event_type, _ in received] == sink.types()
    assert ("checkin", [ALICE]) in received


@pytest.mark.asyncio
async def test_next_cycle_only_reads_new_blocks(scheduler, chain):
    await scheduler.run_cycle()
    chain.calls.clear()
    
    report = await scheduler.run_cycle()
    
    assert chain.calls == []
    assert report.reconciled == 0
    assert report.ranks_changed == 0


@pytest.mark.asyncio
async def test_unexpected_source_error_clears_flag_and_cycle_continues(scheduler, session_scope, chain):
    chain.height_error = RuntimeError("connection reset")
    
    report = await scheduler.run_cycle()
    
    assert set(report.errors) == set(SOURCE_ORDER)
    assert report.errors["badge"] == "connection reset"
    assert all(not c.is_syncing for c in await _checkpoints(session_scope))
    
    chain.height_error = None
    recovered = await scheduler.run_cycle()
    assert recovered.errors == {}
    assert (await _user(session_scope, ALICE)).points == 81


@pytest.mark.asyncio
async def test_ledger_error_is_reported_per_source(scheduler, chain):
    chain.height_error = ProviderError("rate limited")
    
    report = await scheduler.run_cycle()
    
    assert report.errors["checkin"] == "rate limited"
    assert report.sources["checkin"].error == "rate limited"


@pytest.mark.asyncio
async def test_reindex_all_rebuilds_identical_state(scheduler, session_scope, chain):
    await scheduler.run_cycle()
    async with session_scope() as db:
        await db.execute(delete(Checkin))
        await db.execute(update(User).values(points=0, pending_rewards=7.0))
    
    result = await scheduler.reindex_all()
    
    assert list(result["sources"]) == SOURCE_ORDER
    assert result["ranks_changed"] == 0
    alice = await _user(session_scope, ALICE)
    bob = await _user(session_scope, BOB)
    assert (alice.points, bob.points) == (81, 60)
    assert bob.pending_rewards == pytest.approx(0.1)
    assert alice.username == "alice"
    async with session_scope() as db:
        assert (await db.execute(select(func.count()).select_from(Checkin))).scalar_one() == 2
    assert scheduler.status is IndexerStatus.STOPPED


@pytest.mark.asyncio
async def test_reindexing_referrals_replays_rewards_too(scheduler, session_scope, chain):
    await scheduler.run_cycle()
    
    result = await scheduler.reindex_all("referral")
    
    assert set(result["sources"]) == {"referral", "reward"}
    assert (await _user(session_scope, BOB)).pending_rewards == pytest.approx(0.1)
    async with session_scope() as db:
        referral = (await db.execute(select(Referral))).scalar_one()
    assert referral.rewards_amount == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_reindex_of_unknown_source_is_rejected(scheduler):
    with pytest.raises(UnknownSourceError):
        await scheduler.reindex_all("transfers")


@pytest.mark.asyncio
async def test_fix_referrer_casing(scheduler, session_scope):
    mixed = "0x" + "Ab" * 20
    async with session_scope() as db:
        db.add(User(address=DAVE, referrer=mixed))
        db.add(Badge(
            token_id=99, owner=CAROL, tier=0, minted_at=utc_now(),
            transaction_hash=tx_hash(99), block_number=1100, referrer=mixed,
        ))
        db.add(Referral(referrer=mixed, referee=DAVE, transaction_hash=tx_hash(98), referred_at=utc_now()))
    
    assert await scheduler.fix_referrer_casing() == {"fixed": 3, "total": 1}
    assert await scheduler.fix_referrer_casing() == {"fixed": 0, "total": 1}
    async with session_scope() as db:
        badge = (await db.execute(select(Badge))).scalar_one()
    assert badge.referrer == mixed.lower()


@pytest.mark.asyncio
async def test_sync_address_rewards_rebuilds_balances(scheduler, session_scope, chain):
    await scheduler.run_cycle()
    async with session_scope() as db:
        await db.execute(update(User).where(User.address == BOB).values(pending_rewards=9.0, points=0))
    
    result = await scheduler.sync_address_rewards(BOB.upper().replace("0X", "0x"))
    
    assert result["address"] == BOB
    assert result["rewards"] == 1
    assert result["related_badges"] == 1
    assert result["pending_rewards"] == pytest.approx(0.1)
    assert result["points"] == 60
    assert (await _user(session_scope, BOB)).pending_rewards == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_invalid_address_is_rejected(scheduler):
    with pytest.raises(ValidationError):
        await scheduler.sync_address_rewards("not-an-address")
    with pytest.raises(ValidationError):
        await scheduler.recalculate_points("0x1234")


@pytest.mark.asyncio
async def test_recalculate_points_single_and_all(scheduler, session_scope, chain):
    await scheduler.run_cycle()
    async with session_scope() as db:
        await db.execute(update(User).values(points=1))
    
    single = await scheduler.recalculate_points(ALICE)
    assert single["updated"] == 1
    assert single["breakdown"]["total_points"] == 81
    assert single["breakdown"]["previous_total"] == 1
    
    everyone = await scheduler.recalculate_points()
    assert everyone == {"updated": 2, "failed": 0, "ranks_changed": 0}
    assert (await _user(session_scope, BOB)).points == 60


@pytest.mark.asyncio
async def test_recalculate_all_ranks(scheduler, session_scope, chain):
    await scheduler.run_cycle()
    async with session_scope() as db:
        await db.execute(update(User).values(rank=None))
    
    assert await scheduler.recalculate_all_ranks() == {"ranks_changed": 2}


@pytest.mark.asyncio
async def test_interval_can_be_changed(scheduler):
    assert scheduler.interval_minutes == 5
    scheduler.set_interval(15)
    assert scheduler.interval_minutes == 15
    with pytest.raises(ValidationError):
        scheduler.set_interval(0)


@pytest.mark.asyncio
async def test_status_reports_checkpoints_and_last_cycle(scheduler, chain):
    await scheduler.run_cycle()
    
    status = await scheduler.get_status()
    
    assert status["status"] == "stopped"
    assert len(status["checkpoints"]) == 5
    assert status["last_cycle"]["errors"] == {}
    assert status["interval_minutes"] == 5


@pytest.mark.asyncio
async def test_periodic_driver_runs_until_stopped(scheduler, chain):
    scheduler.task_scheduler.loop_interval = 0.01
    driver = asyncio.create_task(scheduler.start())
    
    for _ in range(500):
        if scheduler.last_cycle is not None:
            break
        await asyncio.sleep(0.01)
    with pytest.raises(SchedulerError):
        await scheduler.start()
    await scheduler.stop()
    await asyncio.wait_for(driver, timeout=5)
    
    assert scheduler.last_cycle is not None
    assert scheduler.status is IndexerStatus.STOPPED


def test_sources_without_address_are_left_out(session_scope, ledger):
    config = Settings(environment="test", checkin_contract_address=CHECKIN_CONTRACT, deploy_block=DEPLOY_BLOCK)
    scheduler = build_indexing_scheduler(config, session_scope, ledger=ledger, cache=InMemoryTTLCache())
    assert [source.name for source in scheduler.sources] == ["checkin"]


@pytest.mark.asyncio
async def test_failing_task_is_recorded_not_raised():
    scheduler = TaskScheduler(loop_interval=0.01)
    calls = []
    
    async def broken():
        calls.append("broken")
        raise RuntimeError("boom")
    
    async def healthy():
        calls.append("healthy")
    
    scheduler.register_task("broken", broken, interval_seconds=60, run_immediately=True)
    scheduler.register_task("healthy", healthy, interval_seconds=60, run_immediately=True)
    scheduler.running = True
    
    await scheduler.run_pending_tasks()
    await scheduler.run_pending_tasks()
    
    assert calls == ["broken", "healthy"]
    health = scheduler.health_check()
    assert health["tasks"]["broken"]["error_count"] == 1
    assert health["tasks"]["broken"]["last_error"] == "boom"
    assert health["tasks"]["healthy"]["run_count"] == 1
