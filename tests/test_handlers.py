"""
Tests for DustLock, partner NFT, keeper and leaderboard admin events.

Events are driven through the processor so dispatch, transaction counting
and the handlers' own state changes are exercised together.
"""

import pytest

from conftest import BLOCK, OTHER_USER, T0, USER, activate_epoch
from points_engine.constants import AddressConstants, DustLockConstants, LeaderboardConstants
from points_engine.handlers.dustlock_events import unlock_end

ZERO = AddressConstants.ZERO_ADDRESS
MAX_LOCK = DustLockConstants.MAX_LOCK_TIME
E18 = 10 ** 18

COLLECTION = '0x00000000000000000000000000000000000000c1'
OTHER_COLLECTION = '0x00000000000000000000000000000000000000c2'


async def user_state(store, user_id=USER):
    return await store.user_leaderboard_state.get(user_id)


# ============================================================================
# DustLock
# ============================================================================

async def mint_lock(processor, make_event, token_id=1, amount=1000, locktime=T0 + MAX_LOCK,
                    block=BLOCK, owner=USER):
    await processor.process(make_event('DustLock', 'Transfer', {
        'from': ZERO, 'to': owner, 'tokenId': token_id,
    }, block=block))
    await processor.process(make_event('DustLock', 'Deposit', {
        'tokenId': token_id, 'value': amount, 'locktime': locktime, 'depositType': 1,
    }, block=block))


class TestDustLockEvents:

    @pytest.mark.asyncio
    async def test_deposit_sets_voting_power(self, processor, make_event, store):
        await mint_lock(processor, make_event)

        token = await store.dust_lock_token.get('1')
        assert token.owner == USER
        assert token.locked_amount == 1000
        assert token.end == T0 + MAX_LOCK
        assert token.last_deposit_type == 1
        assert (await user_state(store)).voting_power == 1000

    @pytest.mark.asyncio
    async def test_deposits_accumulate(self, processor, make_event, store):
        await mint_lock(processor, make_event)
        await processor.process(make_event('DustLock', 'Deposit', {
            'tokenId': 1, 'value': 500, 'locktime': T0 + MAX_LOCK, 'depositType': 2,
        }))

        assert (await store.dust_lock_token.get('1')).locked_amount == 1500
        assert (await user_state(store)).voting_power == 1500

    @pytest.mark.asyncio
    async def test_lock_permanent(self, processor, make_event, store):
        await mint_lock(processor, make_event, locktime=T0 + MAX_LOCK // 2)
        assert (await user_state(store)).voting_power == 500

        await processor.process(make_event('DustLock', 'LockPermanent', {'tokenId': 1, 'amount': 1000}))

        token = await store.dust_lock_token.get('1')
        assert token.is_permanent
        assert token.end == 0
        assert (await user_state(store)).voting_power == 1000

    @pytest.mark.asyncio
    async def test_unlock_permanent_rounds_end_to_week(self, processor, make_event, store):
        await mint_lock(processor, make_event)
        await processor.process(make_event('DustLock', 'LockPermanent', {'tokenId': 1, 'amount': 1000}))
        await processor.process(make_event('DustLock', 'UnlockPermanent', {
            'tokenId': 1, 'amount': 1000, 'ts': T0,
        }))

        token = await store.dust_lock_token.get('1')
        assert not token.is_permanent
        assert token.end == unlock_end(T0)
        assert token.end % DustLockConstants.WEEK == 0

    @pytest.mark.asyncio
    async def test_transfer_moves_voting_power(self, processor, make_event, store):
        await mint_lock(processor, make_event)
        await processor.process(make_event('DustLock', 'Transfer', {
            'from': USER, 'to': OTHER_USER, 'tokenId': 1,
        }))

        assert (await store.dust_lock_token.get('1')).owner == OTHER_USER
        assert (await store.user_token_list.get(USER)).token_ids == []
        assert (await store.user_token_list.get(OTHER_USER)).token_ids == [1]
        assert (await user_state(store)).voting_power == 0
        assert (await user_state(store, OTHER_USER)).voting_power == 1000

    @pytest.mark.asyncio
    async def test_burn_clears_owner(self, processor, make_event, store):
        await mint_lock(processor, make_event)
        await processor.process(make_event('DustLock', 'Transfer', {'from': USER, 'to': ZERO, 'tokenId': 1}))

        assert (await store.dust_lock_token.get('1')).owner == ''
        assert (await user_state(store)).voting_power == 0

    @pytest.mark.asyncio
    async def test_withdraw_zeroes_voting_power(self, processor, make_event, store):
        await mint_lock(processor, make_event)
        await processor.process(make_event('DustLock', 'Withdraw', {'tokenId': 1, 'value': 1000}))

        assert (await store.dust_lock_token.get('1')).locked_amount == 0
        state = await user_state(store)
        assert state.voting_power == 0
        assert state.vp_multiplier == LeaderboardConstants.NEUTRAL_MULTIPLIER

    @pytest.mark.asyncio
    async def test_merge_and_split(self, processor, make_event, store):
        await mint_lock(processor, make_event, token_id=1, amount=600)
        await processor.process(make_event('DustLock', 'Split', {
            'tokenId1': 2, 'tokenId2': 3, 'splitAmount1': 400, 'splitAmount2': 200, 'locktime': T0 + MAX_LOCK,
        }))

        assert (await store.dust_lock_token.get('2')).locked_amount == 400
        assert (await store.dust_lock_token.get('3')).locked_amount == 200

        await processor.process(make_event('DustLock', 'Merge', {
            'to': 1, 'amountFinal': 900, 'locktime': T0 + MAX_LOCK,
        }))
        assert (await store.dust_lock_token.get('1')).locked_amount == 900
        assert (await user_state(store)).voting_power == 900

    @pytest.mark.asyncio
    async def test_locks_before_start_block_do_not_count(self, processor, make_event, store):
        await mint_lock(processor, make_event, block=LeaderboardConstants.DUST_LOCK_START_BLOCK - 1)

        assert (await store.dust_lock_token.get('1')).locked_amount == 1000
        assert (await user_state(store)).voting_power == 0

    @pytest.mark.asyncio
    async def test_tier_applies_to_locked_voting_power(self, processor, make_event, store):
        await processor.process(make_event('VotingPowerMultiplier', 'TierAdded', {
            'tierIndex': 0, 'minVotingPower': 1000, 'multiplierBps': 12000,
        }))
        await mint_lock(processor, make_event)

        state = await user_state(store)
        assert state.vp_multiplier == 12000
        assert state.combined_multiplier == 12000
        assert len(store.user_voting_power_history) > 0


# ============================================================================
# Partner NFTs
# ============================================================================

async def add_partnership(processor, make_event, collection=COLLECTION, start=0, static_boost=None):
    params = {
        'collection': collection, 'name': 'Partner', 'active': True, 'startTimestamp': start,
        'endTimestamp': 0, 'currentFirstBonus': 1000, 'currentDecayRatio': 9000,
    }
    if static_boost is not None:
        params['staticBoostBps'] = static_boost
    await processor.process(make_event('NFTPartnershipRegistry', 'PartnershipAdded', params))


async def nft_transfer(processor, make_event, sender, recipient, collection=COLLECTION, token_id=1):
    await processor.process(make_event('PartnerNFT', 'Transfer', {
        'from': sender, 'to': recipient, 'tokenId': token_id,
    }, src=collection))


class TestPartnerNFTEvents:

    @pytest.mark.asyncio
    async def test_partnership_registers_collection(self, processor, make_event, store):
        await add_partnership(processor, make_event)

        registry = await store.nft_partnership_registry_state.get('current')
        assert registry.active_collections == [COLLECTION]
        config = await store.nft_multiplier_config.get('current')
        assert (config.first_bonus, config.decay_ratio) == (1000, 9000)

    @pytest.mark.asyncio
    async def test_first_nft_raises_multiplier(self, processor, make_event, store):
        await add_partnership(processor, make_event)
        await nft_transfer(processor, make_event, ZERO, USER)

        state = await user_state(store)
        assert state.nft_count == 1
        assert state.nft_multiplier == 11000
        assert state.combined_multiplier == 11000

        reasons = [(await store.user_multiplier_snapshot.get(i)).change_reason
                   for i in store.user_multiplier_snapshot.ids()]
        assert reasons == [f"NFT_RECEIVED:{COLLECTION}"]

    @pytest.mark.asyncio
    async def test_second_nft_in_same_collection_does_not_flip(self, processor, make_event, store):
        await add_partnership(processor, make_event)
        await nft_transfer(processor, make_event, ZERO, USER, token_id=1)
        await nft_transfer(processor, make_event, ZERO, USER, token_id=2)

        ownership = await store.user_nft_ownership.get(f"{USER}:{COLLECTION}")
        assert ownership.balance == 2
        assert (await user_state(store)).nft_count == 1
        assert len(store.user_multiplier_snapshot) == 1

    @pytest.mark.asyncio
    async def test_transfer_moves_multiplier(self, processor, make_event, store):
        await add_partnership(processor, make_event)
        await nft_transfer(processor, make_event, ZERO, USER)
        await nft_transfer(processor, make_event, USER, OTHER_USER)

        assert f"{USER}:{COLLECTION}" not in store.user_nft_ownership
        assert (await user_state(store)).nft_multiplier == 10000
        assert (await user_state(store, OTHER_USER)).nft_multiplier == 11000

    @pytest.mark.asyncio
    async def test_self_transfer_only_touches_ownership(self, processor, make_event, store):
        await add_partnership(processor, make_event)
        await nft_transfer(processor, make_event, ZERO, USER)
        await nft_transfer(processor, make_event, USER, USER)

        assert (await store.user_nft_ownership.get(f"{USER}:{COLLECTION}")).balance == 1
        assert len(store.user_multiplier_snapshot) == 1

    @pytest.mark.asyncio
    async def test_static_boost_partnership(self, processor, make_event, store):
        await add_partnership(processor, make_event, collection=OTHER_COLLECTION, static_boost=2000)
        await nft_transfer(processor, make_event, ZERO, USER, collection=OTHER_COLLECTION)

        assert (await user_state(store)).nft_multiplier == 12000

    @pytest.mark.asyncio
    async def test_removed_partnership_leaves_registry(self, processor, make_event, store):
        await add_partnership(processor, make_event)
        await processor.process(make_event('NFTPartnershipRegistry', 'PartnershipRemoved', {
            'collection': COLLECTION,
        }))

        registry = await store.nft_partnership_registry_state.get('current')
        assert registry.active_collections == []
        assert not (await store.nft_partnership.get(COLLECTION)).active

    @pytest.mark.asyncio
    async def test_multiplier_params_are_snapshotted(self, processor, make_event, store):
        await processor.process(make_event('NFTPartnershipRegistry', 'MultiplierParamsUpdated', {
            'newFirstBonus': 1500, 'newDecayRatio': 8000, 'timestamp': T0 + 5,
        }))

        snapshot = await store.nft_multiplier_snapshot.get(str(T0 + 5))
        assert (snapshot.first_bonus, snapshot.decay_ratio) == (1500, 8000)
        assert (await store.nft_multiplier_config.get('current')).first_bonus == 1500


# ============================================================================
# Keeper
# ============================================================================

class TestKeeperEvents:

    @pytest.mark.asyncio
    async def test_voting_power_synced(self, processor, make_event, store):
        await processor.process(make_event('VotingPowerMultiplier', 'TierAdded', {
            'tierIndex': 0, 'minVotingPower': 1000, 'multiplierBps': 15000,
        }))
        await processor.process(make_event('LeaderboardKeeper', 'VotingPowerSynced', {
            'user': USER, 'votingPower': 5000, 'timestamp': T0 + 50,
        }))

        state = await user_state(store)
        assert state.voting_power == 5000
        assert state.vp_multiplier == 15000
        assert state.combined_multiplier == 15000
        assert state.last_update == T0 + 50

    @pytest.mark.asyncio
    async def test_nft_balance_synced(self, processor, make_event, store):
        await processor.process(make_event('NFTPartnershipRegistry', 'MultiplierParamsUpdated', {
            'newFirstBonus': 1000, 'newDecayRatio': 9000, 'timestamp': T0,
        }))
        await processor.process(make_event('LeaderboardKeeper', 'NFTBalanceSynced', {
            'user': USER, 'collection': COLLECTION, 'balance': 2,
        }))

        state = await user_state(store)
        assert state.nft_count == 1
        assert state.nft_multiplier == 11000
        assert f"{USER}:{COLLECTION}" in store.user_nft_baseline

        await processor.process(make_event('LeaderboardKeeper', 'NFTBalanceSynced', {
            'user': USER, 'collection': COLLECTION, 'balance': 0,
        }))
        state = await user_state(store)
        assert state.nft_count == 0
        assert state.nft_multiplier == 10000
        assert f"{USER}:{COLLECTION}" not in store.user_nft_ownership

    @pytest.mark.asyncio
    async def test_lp_sync_for_unknown_pool_is_ignored(self, processor, make_event, store):
        await processor.process(make_event('LeaderboardKeeper', 'LPBalanceSynced', {
            'user': USER, 'pool': '0x00000000000000000000000000000000000000d1', 'liquidity': 10 ** 18,
        }))
        assert len(store.user_lp_position) == 0

    @pytest.mark.asyncio
    async def test_user_settled_without_epoch_refreshes_state(self, processor, make_event, store):
        await processor.process(make_event('LeaderboardKeeper', 'UserSettled', {'user': USER}))
        assert USER in store.user_leaderboard_state
        assert len(store.user_epoch_stats) == 0


# ============================================================================
# Leaderboard admin
# ============================================================================

class TestConfigEvents:

    @pytest.mark.asyncio
    async def test_config_snapshot_converts_bonuses(self, processor, make_event, store):
        await processor.process(make_event('LeaderboardConfig', 'ConfigSnapshot', {
            'depositRateBps': 100, 'borrowRateBps': 500, 'vpRateBps': 2500,
            'supplyDailyBonus': 5 * E18, 'borrowDailyBonus': 10 * E18,
            'repayDailyBonus': 0, 'withdrawDailyBonus': E18 // 2,
            'cooldownSeconds': 3600, 'minDailyBonusUsd': 10, 'timestamp': T0 + 7,
        }))

        config = await store.get_leaderboard_config()
        assert config.deposit_rate_bps == 100
        assert config.supply_daily_bonus == 5.0
        assert config.borrow_daily_bonus == 10.0
        assert config.withdraw_daily_bonus == 0.5
        assert config.min_daily_bonus_usd == 10.0
        assert str(T0 + 7) in store.leaderboard_config_snapshot

    @pytest.mark.parametrize('event_name,param,field', [
        ('DepositRateUpdated', 'newRate', 'deposit_rate_bps'),
        ('BorrowRateUpdated', 'newRate', 'borrow_rate_bps'),
        ('VpRateUpdated', 'newRate', 'vp_rate_bps'),
        ('LPRateUpdated', 'newRate', 'lp_rate_bps'),
        ('CooldownUpdated', 'newSeconds', 'cooldown_seconds'),
    ])
    @pytest.mark.asyncio
    async def test_single_field_updates(self, processor, make_event, store, event_name, param, field):
        await processor.process(make_event('LeaderboardConfig', event_name, {param: 1234}))

        config = await store.get_leaderboard_config()
        assert getattr(config, field) == 1234

    @pytest.mark.asyncio
    async def test_daily_bonus_updated(self, processor, make_event, store):
        await processor.process(make_event('LeaderboardConfig', 'DailyBonusUpdated', {
            'newSupplyBonus': E18, 'newBorrowBonus': 2 * E18, 'newRepayBonus': 3 * E18, 'newWithdrawBonus': 0,
        }))

        config = await store.get_leaderboard_config()
        assert (config.supply_daily_bonus, config.borrow_daily_bonus, config.repay_daily_bonus) == (1.0, 2.0, 3.0)

    @pytest.mark.asyncio
    async def test_tier_lifecycle(self, processor, make_event, store):
        await processor.process(make_event('VotingPowerMultiplier', 'TierAdded', {
            'tierIndex': 0, 'minVotingPower': 100, 'multiplierBps': 11000,
        }))
        await processor.process(make_event('VotingPowerMultiplier', 'TierUpdated', {
            'tierIndex': 0, 'newMinVotingPower': 200, 'newMultiplierBps': 12000,
        }))

        tier = await store.voting_power_tier.get('0')
        assert (tier.min_voting_power, tier.multiplier_bps) == (200, 12000)

        await processor.process(make_event('VotingPowerMultiplier', 'TierRemoved', {'tierIndex': 0}))
        assert not (await store.voting_power_tier.get('0')).is_active


class TestManualPointsEvents:

    @pytest.mark.asyncio
    async def test_award_without_epoch_is_ignored(self, processor, make_event, store):
        await processor.process(make_event('LeaderboardConfig', 'PointsAwarded', {
            'user': USER, 'points': 5 * E18, 'reason': 'bug bounty',
        }))
        assert len(store.manual_points_award) == 0
        assert len(store.user_epoch_stats) == 0

    @pytest.mark.asyncio
    async def test_award_and_remove(self, processor, make_event, store, engine):
        activate_epoch(store)
        award = make_event('LeaderboardConfig', 'PointsAwarded', {
            'user': USER, 'points': 5 * E18, 'reason': 'bug bounty',
        })
        await processor.process(award)

        record = await store.manual_points_award.get(f"{award.tx_hash}-{award.log_index}")
        assert record.points == 5.0
        assert record.reason == 'bug bounty'
        assert record.epoch_number == 1

        await processor.process(make_event('LeaderboardConfig', 'PointsRemoved', {
            'user': USER, 'points': 2 * E18, 'reason': 'correction',
        }))

        stats = await store.user_epoch_stats.get(f"{USER}:1")
        assert stats.manual_award_points == 3 * E18
        top = await engine.leaderboard.get_top_k(1)
        assert [(entry.user_id, entry.points) for entry in top] == [(USER, 3.0)]

    @pytest.mark.asyncio
    async def test_blacklist_removes_from_rankings(self, processor, make_event, store, engine):
        activate_epoch(store)
        await processor.process(make_event('LeaderboardConfig', 'PointsAwarded', {
            'user': USER, 'points': E18, 'reason': 'x',
        }))
        await processor.process(make_event('LeaderboardConfig', 'AddressBlacklisted', {'account': USER}))

        assert (await store.leaderboard_blacklist.get(USER)).is_blacklisted
        assert await engine.leaderboard.get_top_k(1) == []
        # Point ledgers survive
        assert (await store.user_epoch_stats.get(f"{USER}:1")).manual_award_points == E18

        await processor.process(make_event('LeaderboardConfig', 'AddressUnblacklisted', {'account': USER}))
        assert not (await store.leaderboard_blacklist.get(USER)).is_blacklisted
