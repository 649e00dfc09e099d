"""create mining tables

Revision ID: 3f1c9a2b7d40
Revises:
Create Date: 2026-10-18 10:02:41.513207

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c9a2b7d40'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(precision=20, scale=8)


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('username', sa.String(length=255), nullable=False),
        sa.Column('discriminator', sa.String(length=10), nullable=True),
        sa.Column('avatar', sa.String(length=255), nullable=True),
        sa.Column('account_age', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('multiplier', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('current_balance', MONEY, nullable=False),
        sa.Column('total_earned', MONEY, nullable=False),
        sa.Column('weekly_earnings', MONEY, nullable=False),
        sa.Column('monthly_earnings', MONEY, nullable=False),
        sa.Column('referral_code', sa.String(length=50), nullable=True),
        sa.Column('referred_by', sa.String(length=64), nullable=True),
        sa.Column('referral_earnings', MONEY, nullable=False),
        sa.Column('total_referrals', sa.Integer(), nullable=False),
        sa.Column('is_node_active', sa.Boolean(), nullable=False),
        sa.Column('node_start_time', sa.DateTime(), nullable=True),
        sa.Column('tasks_completed', sa.Integer(), nullable=False),
        sa.Column('daily_checkin_claimed', sa.Boolean(), nullable=False),
        sa.Column('last_login_time', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['referred_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referral_code'),
        sa.UniqueConstraint('username')
    )

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reward', MONEY, nullable=False),
        sa.Column('type', sa.Enum('daily', 'weekly', 'social', 'achievement', name='tasktypeenum'), nullable=False),
        sa.Column('max_progress', sa.Integer(), nullable=False),
        sa.Column('social_url', sa.String(length=500), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('tasks', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_tasks_type'), ['type'], unique=False)

    op.create_table(
        'mining_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('earnings', MONEY, nullable=False),
        sa.Column('hash_rate', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('efficiency', sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column('checkpoint_seq', sa.Integer(), nullable=False),
        sa.Column('open_slot', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('open_slot')
    )
    with op.batch_alter_table('mining_sessions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_mining_sessions_user_id'), ['user_id'], unique=False)
        batch_op.create_index('ix_mining_sessions_user_start', ['user_id', 'start_time'], unique=False)

    op.create_table(
        'user_tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('task_id', sa.String(length=255), nullable=False),
        sa.Column('completed', sa.Boolean(), nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('reward', MONEY, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'task_id', name='uix_user_task')
    )

    op.create_table(
        'referral_earnings_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('referrer_id', sa.String(length=64), nullable=False),
        sa.Column('referred_id', sa.String(length=64), nullable=False),
        sa.Column('earning_type', sa.String(length=32), nullable=False),
        sa.Column('base_amount', MONEY, nullable=False),
        sa.Column('referral_amount', MONEY, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['referred_id'], ['users.id']),
        sa.ForeignKeyConstraint(['referrer_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('referral_earnings_log', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_referral_earnings_log_referrer_id'), ['referrer_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_referral_earnings_log_referred_id'), ['referred_id'], unique=False)

    op.create_table(
        'points_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('change_type', sa.String(length=60), nullable=False),
        sa.Column('change_amount', MONEY, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('points_history', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_points_history_user_id'), ['user_id'], unique=False)

    op.create_table(
        'ip_tracking',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('ip_address', sa.String(length=64), nullable=False),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('first_seen', sa.DateTime(), nullable=True),
        sa.Column('last_seen', sa.DateTime(), nullable=True),
        sa.Column('seen_count', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'ip_address', name='uix_user_ip')
    )
    with op.batch_alter_table('ip_tracking', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_ip_tracking_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_ip_tracking_ip_address'), ['ip_address'], unique=False)


def downgrade():
    with op.batch_alter_table('ip_tracking', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_ip_tracking_ip_address'))
        batch_op.drop_index(batch_op.f('ix_ip_tracking_user_id'))
    op.drop_table('ip_tracking')

    with op.batch_alter_table('points_history', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_points_history_user_id'))
    op.drop_table('points_history')

    with op.batch_alter_table('referral_earnings_log', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_referral_earnings_log_referred_id'))
        batch_op.drop_index(batch_op.f('ix_referral_earnings_log_referrer_id'))
    op.drop_table('referral_earnings_log')

    op.drop_table('user_tasks')

    with op.batch_alter_table('mining_sessions', schema=None) as batch_op:
        batch_op.drop_index('ix_mining_sessions_user_start')
        batch_op.drop_index(batch_op.f('ix_mining_sessions_user_id'))
    op.drop_table('mining_sessions')

    with op.batch_alter_table('tasks', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_tasks_type'))
    op.drop_table('tasks')

    op.drop_table('users')
