"""Initial migration - checkpoints, badges, check-ins, users, ledger, referrals, rewards

Revision ID: 001
Revises: 
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='Row last update time'),
    ]


def upgrade() -> None:
    points_source = sa.Enum('CHECKIN', 'ACHIEVEMENT', 'REFERRAL', 'OTHER', name='pointssource')
    reward_kind = sa.Enum('ADDED', 'CLAIMED', name='rewardkind')

    op.create_table('sync_checkpoints',
        sa.Column('source_id', sa.String(length=120), nullable=False, comment='Event source identifier, <contract>:<source name>'),
        sa.Column('contract_address', sa.String(length=42), nullable=False, comment='Contract the source reads logs from'),
        sa.Column('last_processed_block', sa.BigInteger(), nullable=False, comment='Highest block whose logs are fully persisted'),
        sa.Column('is_syncing', sa.Boolean(), nullable=False, comment='Advisory in-progress flag'),
        sa.Column('last_sync_time', sa.DateTime(), nullable=True, comment='When the checkpoint last moved or the flag last changed'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('source_id')
    )

    op.create_table('badges',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('token_id', sa.BigInteger(), nullable=False, comment='On-chain token id'),
        sa.Column('owner', sa.String(length=42), nullable=False, comment='Owner address, lower-case'),
        sa.Column('tier', sa.Integer(), nullable=False, comment='Badge tier 0-4'),
        sa.Column('minted_at', sa.DateTime(), nullable=False, comment='Block timestamp of the mint'),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False, comment='Mint transaction hash'),
        sa.Column('block_number', sa.BigInteger(), nullable=False, comment='Mint block number'),
        sa.Column('referrer', sa.String(length=42), nullable=True, comment='Referrer address, lower-case'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_id'),
        sa.UniqueConstraint('transaction_hash')
    )

    op.create_table('checkins',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('address', sa.String(length=42), nullable=False, comment='User address, lower-case'),
        sa.Column('checkin_number', sa.Integer(), nullable=False, comment='Sequence number emitted by the contract'),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False, comment='Check-in transaction hash'),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('block_timestamp', sa.DateTime(), nullable=False, comment='Check-in time'),
        sa.Column('points', sa.Integer(), nullable=False, comment='Points awarded after boost'),
        sa.Column('boost', sa.Float(), nullable=False, comment='Multiplier applied to base points'),
        sa.Column('tier_at_checkin', sa.Integer(), nullable=False, comment='Effective badge tier when the check-in happened'),
        sa.Column('message', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_hash'),
        sa.UniqueConstraint('address', 'checkin_number', name='unique_checkin_number')
    )

    op.create_table('users',
        sa.Column('address', sa.String(length=42), nullable=False, comment='Wallet address, lower-case'),
        sa.Column('username', sa.String(length=64), nullable=True, comment='Registered username, lower-case'),
        sa.Column('username_block', sa.BigInteger(), nullable=True, comment='Block of the event that set the current username'),
        sa.Column('username_log_index', sa.Integer(), nullable=True, comment='Log index of the event that set the current username'),
        sa.Column('highest_badge_tier', sa.Integer(), nullable=False, comment='Highest tier ever minted, -1 without a badge'),
        sa.Column('checkin_count', sa.Integer(), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False, comment='Grand total, referral ledger entries excluded'),
        sa.Column('checkin_points', sa.Integer(), nullable=False),
        sa.Column('badge_points', sa.Integer(), nullable=False),
        sa.Column('other_points', sa.Integer(), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=True, comment='1-based leaderboard position'),
        sa.Column('last_checkin', sa.DateTime(), nullable=True),
        sa.Column('referrer', sa.String(length=42), nullable=True, comment='Who referred this user'),
        sa.Column('pending_rewards', sa.Float(), nullable=False),
        sa.Column('claimed_rewards', sa.Float(), nullable=False),
        sa.Column('total_referral_rewards', sa.Float(), nullable=False),
        sa.Column('last_reward_claim', sa.DateTime(), nullable=True),
        sa.Column('points_recalculated_at', sa.DateTime(), nullable=True, comment='Last reconciliation of the points breakdown'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('address')
    )

    op.create_table('points_ledger',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('address', sa.String(length=42), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False, comment='Magnitude of the award'),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('source', points_source, nullable=False, comment='checkin, achievement, referral or other'),
        sa.Column('timestamp', sa.DateTime(), nullable=False, comment='When the underlying event happened'),
        sa.Column('tier_at_event', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(length=120), nullable=True, comment='Natural key of the producing event'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('referrals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('referrer', sa.String(length=42), nullable=False),
        sa.Column('referee', sa.String(length=42), nullable=False, comment='Referred address'),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False),
        sa.Column('referred_at', sa.DateTime(), nullable=False),
        sa.Column('rewards_claimed', sa.Boolean(), nullable=False),
        sa.Column('rewards_amount', sa.Float(), nullable=False, comment='Reward apportioned to this referral, in ether'),
        sa.Column('badge_tier', sa.Integer(), nullable=False, comment='Highest reward tier applied to this referral'),
        sa.Column('reward_updated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referee')
    )

    op.create_table('rewards',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', reward_kind, nullable=False),
        sa.Column('event_name', sa.String(length=64), nullable=False, comment='Decoded event name'),
        sa.Column('referrer', sa.String(length=42), nullable=False, comment='Referrer credited or claiming'),
        sa.Column('amount', sa.Float(), nullable=False, comment='Amount in ether'),
        sa.Column('amount_wei', sa.String(length=80), nullable=False, comment='Exact amount in wei'),
        sa.Column('tier', sa.Integer(), nullable=True),
        sa.Column('event_at', sa.DateTime(), nullable=False),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False),
        sa.Column('log_index', sa.Integer(), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('related_badges', sa.JSON(), nullable=False, comment='Token ids of badges minted with this referrer'),
        sa.Column('referral_id', sa.Integer(), nullable=True, comment='Referral the added amount was apportioned to'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )

    # Create indexes
    op.create_index('idx_badge_owner_minted', 'badges', ['owner', 'minted_at'])
    op.create_index('idx_badge_referrer', 'badges', ['referrer'])
    op.create_index('idx_badge_tier', 'badges', ['tier'])

    op.create_index('idx_checkin_address_time', 'checkins', ['address', 'block_timestamp'])

    op.create_index('idx_user_leaderboard', 'users', ['points', 'checkin_count'])
    op.create_index('idx_user_checkins', 'users', ['checkin_count'])
    op.create_index('idx_user_username', 'users', ['username'])
    op.create_index('idx_user_rank', 'users', ['rank'])

    op.create_index('idx_ledger_address_source', 'points_ledger', ['address', 'source'])
    op.create_index('idx_ledger_source_reference', 'points_ledger', ['source', 'reference'], unique=True)
    op.create_index('idx_ledger_timestamp', 'points_ledger', ['timestamp'])

    op.create_index('idx_referral_referrer_claimed', 'referrals', ['referrer', 'rewards_claimed'])

    op.create_index('idx_reward_tx_log', 'rewards', ['transaction_hash', 'log_index'], unique=True)
    op.create_index('idx_reward_referrer_kind', 'rewards', ['referrer', 'kind'])


def downgrade() -> None:
    op.drop_index('idx_reward_referrer_kind', table_name='rewards')
    op.drop_index('idx_reward_tx_log', table_name='rewards')
    op.drop_index('idx_referral_referrer_claimed', table_name='referrals')
    op.drop_index('idx_ledger_timestamp', table_name='points_ledger')
    op.drop_index('idx_ledger_source_reference', table_name='points_ledger')
    op.drop_index('idx_ledger_address_source', table_name='points_ledger')
    op.drop_index('idx_user_rank', table_name='users')
    op.drop_index('idx_user_username', table_name='users')
    op.drop_index('idx_user_checkins', table_name='users')
    op.drop_index('idx_user_leaderboard', table_name='users')
    op.drop_index('idx_checkin_address_time', table_name='checkins')
    op.drop_index('idx_badge_tier', table_name='badges')
    op.drop_index('idx_badge_referrer', table_name='badges')
    op.drop_index('idx_badge_owner_minted', table_name='badges')

    # Drop tables
    op.drop_table('rewards')
    op.drop_table('referrals')
    op.drop_table('points_ledger')
    op.drop_table('users')
    op.drop_table('checkins')
    op.drop_table('badges')
    op.drop_table('sync_checkpoints')

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS rewardkind")
    op.execute("DROP TYPE IF EXISTS pointssource")
