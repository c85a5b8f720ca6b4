"""
Tests for the badge, check-in, username, referral and reward processors.
"""

import pytest
from sqlalchemy import select

from gmtea.indexer.core.types import ProcessOutcome
from gmtea.indexer.handlers import (
    BadgeHandlers,
    CheckinHandlers,
    ReferralHandlers,
    RewardHandlers,
    UsernameHandlers,
)
from gmtea.indexer.handlers.base import ZERO_ADDRESS
from gmtea.models.badge import Badge
from gmtea.models.checkin import Checkin
from gmtea.models.points_ledger import PointsLedgerEntry, PointsSource
from gmtea.models.referral import Referral
from gmtea.models.reward import Reward, RewardKind
from gmtea.models.user import User
from tests.conftest import ALICE, BOB, CAROL, DAVE, make_event, tx_hash

ETHER = 10**18


async def _user(session_scope, address) -> User:
    async with session_scope() as db:
        return await db.get(User, address, populate_existing=True)


async def _ledger(session_scope, address, source=None):
    async with session_scope() as db:
        query = select(PointsLedgerEntry).where(PointsLedgerEntry.address == address)
        if source is not None:
            query = query.where(PointsLedgerEntry.source == source)
        return (await db.execute(query.order_by(PointsLedgerEntry.id))).scalars().all()


def checkin_event(user, count, block, at=None, tx=None):
    return make_event(
        "CheckinCompleted",
        {"user": user, "count": count, "timestamp": 0, "message": "gm"},
        block_number=block,
        tx=tx,
        at=at,
    )


def badge_event(owner, token_id, tier, block, referrer=ZERO_ADDRESS, at=None, tx=None):
    return make_event(
        "BadgeMinted",
        {"to": owner, "tokenId": token_id, "tier": tier, "referrer": referrer},
        block_number=block,
        tx=tx,
        at=at,
    )


# Check-ins

@pytest.mark.asyncio
async def test_first_checkin_awards_base_points_and_milestone(session_scope, sink):
    handler = CheckinHandlers(session_scope, sink)
    
    result = await handler.handle(checkin_event(ALICE, 1, 1100))
    
    assert result.outcome is ProcessOutcome.CREATED
    assert result.addresses == (ALICE,)
    user = await _user(session_scope, ALICE)
    assert (user.checkin_count, user.checkin_points, user.other_points, user.points) == (1, 10, 50, 60)
    assert user.last_checkin is not None
    
    entries = await _ledger(session_scope, ALICE)
    assert [(e.source, e.points) for e in entries] == [
        (PointsSource.CHECKIN, 10),
        (PointsSource.ACHIEVEMENT, 50),
    ]
    assert entries[1].reference == f"milestone:{ALICE}:1"
    assert sink.types() == ["checkin"]


@pytest.mark.asyncio
async def test_checkin_replay_is_a_duplicate(session_scope, sink):
    handler = CheckinHandlers(session_scope, sink)
    event = checkin_event(ALICE, 1, 1100)
    await handler.handle(event)
    
    result = await handler.handle(event)
    
    assert result.outcome is ProcessOutcome.DUPLICATE
    user = await _user(session_scope, ALICE)
    assert (user.checkin_count, user.points) == (1, 60)
    assert len(await _ledger(session_scope, ALICE)) == 2
    assert sink.types() == ["checkin"]


@pytest.mark.asyncio
async def test_checkin_uses_current_badge_boost(session_scope, days):
    await BadgeHandlers(session_scope).handle(badge_event(ALICE, 1, 1, 1100, at=days(0)))
    
    await CheckinHandlers(session_scope).handle(checkin_event(ALICE, 1, 1200, at=days(1)))
    
    async with session_scope() as db:
        checkin = (await db.execute(select(Checkin))).scalar_one()
    assert (checkin.tier_at_checkin, checkin.boost, checkin.points) == (1, 1.2, 12)


@pytest.mark.asyncio
async def test_seventh_checkin_reaches_second_milestone(session_scope, days):
    handler = CheckinHandlers(session_scope)
    for n in range(1, 8):
        await handler.handle(checkin_event(ALICE, n, 1100 + n, at=days(n)))
    
    user = await _user(session_scope, ALICE)
    assert user.checkin_count == 7
    assert user.other_points == 100
    assert user.points == 70 + 100
    assert user.last_checkin == days(7)


# Badges

@pytest.mark.asyncio
async def test_badge_mint_creates_badge_and_reconciles_owner(session_scope, sink, days):
    result = await BadgeHandlers(session_scope, sink).handle(
        badge_event(ALICE, 42, 2, 1100, referrer=BOB.upper().replace("0X", "0x"), at=days(0))
    )
    
    assert result.outcome is ProcessOutcome.CREATED
    async with session_scope() as db:
        badge = (await db.execute(select(Badge))).scalar_one()
        referrer = await db.get(User, BOB)
    assert (badge.token_id, badge.owner, badge.tier, badge.referrer) == (42, ALICE, 2, BOB)
    assert referrer is not None
    
    user = await _user(session_scope, ALICE)
    assert (user.highest_badge_tier, user.badge_points, user.points) == (2, 50, 50)
    entries = await _ledger(session_scope, ALICE, PointsSource.ACHIEVEMENT)
    assert [(e.reason, e.reference) for e in entries] == [("Badge Tier 2 Earned", "badge:42")]
    assert sink.types() == ["badge-mint"]


@pytest.mark.asyncio
async def test_zero_referrer_is_stored_as_none_and_later_backfilled(session_scope, days):
    handler = BadgeHandlers(session_scope)
    await handler.handle(badge_event(ALICE, 5, 0, 1100, at=days(0)))
    
    duplicate = await handler.handle(badge_event(ALICE, 5, 0, 1100, at=days(0)))
    patched = await handler.handle(badge_event(ALICE, 5, 0, 1100, referrer=CAROL, at=days(0), tx=tx_hash(77)))
    
    assert duplicate.outcome is ProcessOutcome.DUPLICATE
    assert patched.outcome is ProcessOutcome.PATCHED
    async with session_scope() as db:
        badge = (await db.execute(select(Badge))).scalar_one()
    assert badge.referrer == CAROL


@pytest.mark.asyncio
async def test_lower_tier_mint_does_not_earn_achievement(session_scope, days):
    handler = BadgeHandlers(session_scope)
    await handler.handle(badge_event(ALICE, 1, 3, 1100, at=days(0)))
    await handler.handle(badge_event(ALICE, 2, 1, 1200, at=days(1)))
    
    user = await _user(session_scope, ALICE)
    assert (user.highest_badge_tier, user.badge_points) == (3, 70)
    entries = await _ledger(session_scope, ALICE, PointsSource.ACHIEVEMENT)
    assert [e.reference for e in entries] == ["badge:1"]


@pytest.mark.asyncio
async def test_out_of_range_tier_is_ignored(session_scope):
    result = await BadgeHandlers(session_scope).handle(badge_event(ALICE, 9, 7, 1100))
    
    assert result.outcome is ProcessOutcome.IGNORED
    async with session_scope() as db:
        assert (await db.execute(select(Badge))).scalar_one_or_none() is None


# Usernames

@pytest.mark.asyncio
async def test_username_follows_chain_order(session_scope):
    handler = UsernameHandlers(session_scope)
    registered = make_event("UsernameRegistered", {"user": ALICE, "username": "Alice"}, block_number=1100)
    changed = make_event(
        "UsernameChanged",
        {"user": ALICE, "oldUsername": "alice", "newUsername": "Queen"},
        block_number=1200,
    )
    
    assert (await handler.handle(registered)).outcome is ProcessOutcome.CREATED
    assert (await handler.handle(changed)).outcome is ProcessOutcome.CREATED
    assert (await _user(session_scope, ALICE)).username == "queen"
    
    # an older event replayed after the rename does not roll it back
    assert (await handler.handle(registered)).outcome is ProcessOutcome.DUPLICATE
    assert (await _user(session_scope, ALICE)).username == "queen"


@pytest.mark.asyncio
async def test_same_block_username_events_use_log_index(session_scope):
    handler = UsernameHandlers(session_scope)
    later = make_event(
        "UsernameChanged", {"user": ALICE, "oldUsername": "a", "newUsername": "second"},
        block_number=1100, log_index=5,
    )
    earlier = make_event("UsernameRegistered", {"user": ALICE, "username": "first"}, block_number=1100, log_index=2)
    
    await handler.handle(later)
    result = await handler.handle(earlier)
    
    assert result.outcome is ProcessOutcome.DUPLICATE
    assert (await _user(session_scope, ALICE)).username == "second"


@pytest.mark.asyncio
async def test_empty_username_is_ignored(session_scope):
    result = await UsernameHandlers(session_scope).handle(
        make_event("UsernameRegistered", {"user": ALICE, "username": "   "})
    )
    assert result.outcome is ProcessOutcome.IGNORED


# Referrals

@pytest.mark.asyncio
async def test_referral_is_recorded_once(session_scope, sink):
    handler = ReferralHandlers(session_scope, sink, referral_points=25)
    event = make_event("ReferralRecorded", {"referrer": ALICE, "referee": BOB}, block_number=1100)
    
    assert (await handler.handle(event)).outcome is ProcessOutcome.CREATED
    assert (await handler.handle(event)).outcome is ProcessOutcome.DUPLICATE
    stolen = make_event("ReferralRecorded", {"referrer": CAROL, "referee": BOB}, block_number=1200)
    assert (await handler.handle(stolen)).outcome is ProcessOutcome.DUPLICATE
    
    assert (await _user(session_scope, BOB)).referrer == ALICE
    referral_entries = await _ledger(session_scope, ALICE, PointsSource.REFERRAL)
    assert [e.points for e in referral_entries] == [25]
    # referral ledger entries never count towards the total
    assert (await _user(session_scope, ALICE)).points == 0
    assert sink.types() == ["referral"]


@pytest.mark.asyncio
async def test_self_referral_is_ignored(session_scope):
    result = await ReferralHandlers(session_scope).handle(
        make_event("ReferralRecorded", {"referrer": ALICE, "referee": ALICE})
    )
    assert result.outcome is ProcessOutcome.IGNORED


# Rewards

async def _record_referrals(session_scope, days):
    handler = ReferralHandlers(session_scope)
    await handler.handle(make_event("ReferralRecorded", {"referrer": ALICE, "referee": BOB}, block_number=1100, at=days(1)))
    await handler.handle(make_event("ReferralRecorded", {"referrer": ALICE, "referee": CAROL}, block_number=1200, at=days(2)))


def reward_added(amount, tier, block, log_index=0):
    return make_event(
        "RewardAdded", {"referrer": ALICE, "amount": amount, "tier": tier},
        block_number=block, log_index=log_index,
    )


async def _referrals(session_scope):
    async with session_scope() as db:
        rows = (await db.execute(select(Referral))).scalars().all()
    return {r.referee: r for r in rows}


@pytest.mark.asyncio
async def test_reward_goes_to_latest_referral_not_rewarded_at_tier(session_scope, days):
    await _record_referrals(session_scope, days)
    handler = RewardHandlers(session_scope)
    
    await handler.handle(reward_added(ETHER // 10, 0, 1300))
    await handler.handle(reward_added(ETHER // 10, 0, 1400))
    await handler.handle(reward_added(ETHER // 5, 1, 1500))
    
    referrals = await _referrals(session_scope)
    assert referrals[CAROL].badge_tier == 1
    assert referrals[CAROL].rewards_amount == pytest.approx(0.3)
    assert referrals[BOB].badge_tier == 0
    assert referrals[BOB].rewards_amount == pytest.approx(0.1)
    
    user = await _user(session_scope, ALICE)
    assert user.pending_rewards == pytest.approx(0.4)
    assert user.total_referral_rewards == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_reward_replay_does_not_double_count(session_scope, days):
    await _record_referrals(session_scope, days)
    handler = RewardHandlers(session_scope)
    event = reward_added(ETHER, 0, 1300, log_index=4)
    
    await handler.handle(event)
    result = await handler.handle(event)
    
    assert result.outcome is ProcessOutcome.DUPLICATE
    assert (await _user(session_scope, ALICE)).pending_rewards == pytest.approx(1.0)
    async with session_scope() as db:
        reward = (await db.execute(select(Reward))).scalar_one()
    assert (reward.kind, reward.amount_wei, reward.tier) == (RewardKind.ADDED, str(ETHER), 0)


@pytest.mark.asyncio
async def test_claim_marks_rewarded_referrals_and_floors_pending(session_scope, days, sink):
    await _record_referrals(session_scope, days)
    handler = RewardHandlers(session_scope, sink)
    await handler.handle(reward_added(ETHER // 2, 0, 1300))
    
    claim = make_event("RewardClaimed", {"user": ALICE, "amount": ETHER}, block_number=1400, at=days(5))
    result = await handler.handle(claim)
    
    assert result.outcome is ProcessOutcome.CREATED
    referrals = await _referrals(session_scope)
    assert referrals[CAROL].rewards_claimed is True
    assert referrals[BOB].rewards_claimed is False
    user = await _user(session_scope, ALICE)
    assert user.pending_rewards == 0.0
    assert user.claimed_rewards == pytest.approx(1.0)
    assert user.last_reward_claim == days(5)
    assert sink.types() == ["reward-added", "reward-claimed"]


@pytest.mark.asyncio
async def test_claim_aliases_use_the_same_processor(session_scope):
    handler = RewardHandlers(session_scope)
    for n, name in enumerate(["ReferralRewardClaimed", "RewardSent", "ReferralReward"]):
        result = await handler.handle(
            make_event(name, {"user": DAVE, "amount": ETHER // 10}, block_number=1100 + n)
        )
        assert result.outcome is ProcessOutcome.CREATED
    
    assert (await _user(session_scope, DAVE)).claimed_rewards == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_unknown_event_name_is_ignored(session_scope):
    result = await RewardHandlers(session_scope).handle(make_event("Transfer", {}))
    assert result.outcome is ProcessOutcome.IGNORED
