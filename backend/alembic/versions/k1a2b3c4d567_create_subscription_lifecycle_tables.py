"""create subscription lifecycle tables

Revision ID: k1a2b3c4d567
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'k1a2b3c4d567'
down_revision = None
branch_labels = None
depends_on = None

SUBSCRIPTION_STATUSES = ('trialing', 'active', 'paused', 'past_due', 'canceled_scheduled', 'canceled')


def upgrade() -> None:
    # businesses テーブル (課金対象の店舗)
    op.create_table(
        'businesses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False, comment='店舗名'),
        sa.Column('contact_email', sa.String(255), nullable=False, comment='請求連絡先メールアドレス'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_businesses_contact_email', 'businesses', ['contact_email'])

    # subscription_plans テーブル (プランカタログ)
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('key', sa.String(50), nullable=False, comment='プランキー (例: basic, premium)'),
        sa.Column('name', sa.String(255), nullable=False, comment='プラン名'),
        sa.Column('description', sa.Text(), nullable=True, comment='プラン説明'),
        sa.Column('features', sa.Text(), nullable=True, comment='機能一覧 (改行区切り)'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='購読受付中'),
        sa.Column('recurring_price', sa.Integer(), nullable=False, comment='請求額 (セント単位)'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('interval', sa.Enum('month', 'year', 'none', name='billing_interval'), nullable=False,
                  comment='請求周期: none=請求なし (カタログ専用)'),
        sa.Column('trial_days', sa.Integer(), nullable=False, comment='無料トライアル日数'),
        sa.Column('stripe_product_id', sa.String(255), nullable=True),
        sa.Column('stripe_price_id', sa.String(255), nullable=True, comment='現在の価格ID'),
        sa.Column('sort_order', sa.Integer(), nullable=False, comment='表示順（小さいほど上）'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_product_id'),
        sa.UniqueConstraint('stripe_price_id'),
    )
    op.create_index('ix_subscription_plans_key', 'subscription_plans', ['key'], unique=True)

    # subscription_plan_prices テーブル (価格履歴)
    op.create_table(
        'subscription_plan_prices',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('stripe_price_id', sa.String(255), nullable=False),
        sa.Column('unit_amount', sa.Integer(), nullable=False, comment='請求額 (セント単位)'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('interval', sa.String(10), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_price_id'),
    )
    op.create_index('ix_subscription_plan_prices_plan_id', 'subscription_plan_prices', ['plan_id'])

    # subscriptions テーブル
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('live_business_id', sa.Integer(), nullable=True,
                  comment='終了前の間だけbusiness_idを保持 (1店舗1購読の一意制約用)'),
        sa.Column('plan_key', sa.String(50), nullable=False, comment='利用中プランキー'),
        sa.Column('stripe_price_id', sa.String(255), nullable=True, comment='外部で課金中の価格ID'),
        sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscription_status'), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('pending_plan_key', sa.String(50), nullable=True, comment='次回更新時に適用するプランキー'),
        sa.Column('pending_plan_effective_at', sa.DateTime(), nullable=True, comment='プラン変更予定日時'),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, comment='確定した変更ごとに+1'),
        sa.Column('state_watermark', sa.Integer(), nullable=False,
                  comment='最後に適用した外部イベントの発生UNIX時刻 (イベント同士の順序判定用)'),
        sa.Column('local_commit_ts', sa.Integer(), nullable=False, server_default='0',
                  comment='最後のローカル変更 (対話操作・照合) のUNIX時刻'),
        sa.Column('last_event_id', sa.String(255), nullable=True, comment='最後に適用した外部イベントID'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_subscription_id'),
        sa.UniqueConstraint('live_business_id', name='uq_subscriptions_live_business'),
    )
    op.create_index('ix_subscriptions_business_id', 'subscriptions', ['business_id'])
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    # external_event_records テーブル (Webhook冪等性)
    op.create_table(
        'external_event_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('event_created', sa.Integer(), nullable=False, comment='イベント発生時刻 (UNIX秒)'),
        sa.Column('outcome', sa.String(40), nullable=False, comment='処理結果'),
        sa.Column('delivery_count', sa.Integer(), nullable=False, comment='受信回数'),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('last_received_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_external_event_records_event_id', 'external_event_records', ['event_id'], unique=True)
    op.create_index('ix_external_event_records_stripe_subscription_id', 'external_event_records',
                    ['stripe_subscription_id'])
    op.create_index('ix_external_event_records_received_at', 'external_event_records', ['received_at'])

    # activity_logs テーブル (監査ログ)
    op.create_table(
        'activity_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(50), nullable=False, comment='操作種別'),
        sa.Column('actor', sa.String(20), nullable=False, comment='interactive/reconciliation/scheduler'),
        sa.Column('from_status', sa.String(30), nullable=True),
        sa.Column('to_status', sa.String(30), nullable=True),
        sa.Column('plan_key', sa.String(50), nullable=True),
        sa.Column('version', sa.Integer(), nullable=True, comment='遷移後のversion'),
        sa.Column('stripe_event_id', sa.String(255), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True, comment='詳細データ'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_activity_logs_business_id', 'activity_logs', ['business_id'])
    op.create_index('ix_activity_logs_subscription_id', 'activity_logs', ['subscription_id'])
    op.create_index('ix_activity_logs_action', 'activity_logs', ['action'])
    op.create_index('ix_activity_logs_created_at', 'activity_logs', ['created_at'])

    # pending_reconciliations テーブル (外部との照合待ち)
    op.create_table(
        'pending_reconciliations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('operation', sa.String(50), nullable=False, comment='対象操作'),
        sa.Column('reason', sa.String(30), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, comment='照合試行回数'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pending_reconciliations_business_id', 'pending_reconciliations', ['business_id'])
    op.create_index('ix_pending_reconciliations_stripe_subscription_id', 'pending_reconciliations',
                    ['stripe_subscription_id'])
    op.create_index('ix_pending_reconciliations_resolved', 'pending_reconciliations', ['resolved'])


def downgrade() -> None:
    op.drop_table('pending_reconciliations')
    op.drop_table('activity_logs')
    op.drop_table('external_event_records')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plan_prices')
    op.drop_table('subscription_plans')
    op.drop_table('businesses')
