"""Create campaign delivery tables

Revision ID: 7c2d41e9a0b3
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '7c2d41e9a0b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create campaigns, subscribers, delivery_logs and ab_test_remaining"""

    op.create_table(
        'campaigns',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('subject', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.String(), nullable=False, server_default='draft'),

        # Scheduling
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('schedule_type', sa.String(), nullable=False, server_default='none'),
        sa.Column('schedule_config', sa.Text(), nullable=True),
        sa.Column('last_sent_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('recipient_count', sa.Integer(), nullable=False, server_default='0'),

        # A/B testing
        sa.Column('ab_test_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ab_subject_b', sa.String(), nullable=True),
        sa.Column('ab_from_name_b', sa.String(), nullable=True),
        sa.Column('ab_wait_hours', sa.Integer(), nullable=False, server_default='4'),
        sa.Column('ab_test_sent_at', sa.DateTime(), nullable=True),
        sa.Column('ab_winner', sa.String(length=1), nullable=True),

        # Metadata
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('draft', 'scheduled', 'ab_testing', 'sent', 'failed')",
            name='ck_campaigns_status'
        ),
    )

    op.create_table(
        'subscribers',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('unsubscribe_token', sa.String(), nullable=False),
        sa.Column('subscribed_at', sa.DateTime(), nullable=True),
        sa.Column('unsubscribed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'delivery_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('campaign_id', sa.String(), nullable=False),
        sa.Column('subscriber_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('email_subject', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='sent'),
        sa.Column('provider_id', sa.String(), nullable=True),
        sa.Column('ab_variant', sa.String(length=1), nullable=True),
        sa.Column('occurrence_at', sa.DateTime(), nullable=False),

        # Event timestamps
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('opened_at', sa.DateTime(), nullable=True),
        sa.Column('clicked_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['campaign_id'], ['campaigns.id']),
        sa.ForeignKeyConstraint(['subscriber_id'], ['subscribers.id']),
        sa.UniqueConstraint(
            'campaign_id', 'subscriber_id', 'occurrence_at',
            name='uq_delivery_campaign_subscriber_occurrence'
        ),
    )

    op.create_table(
        'ab_test_remaining',
        sa.Column('campaign_id', sa.String(), nullable=False),
        sa.Column('subscriber_ids', sa.Text(), nullable=False, server_default=''),
        sa.Column('winner', sa.String(length=1), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('campaign_id'),
        sa.ForeignKeyConstraint(['campaign_id'], ['campaigns.id']),
    )

    # Create indexes for performance
    op.create_index('idx_campaign_due', 'campaigns', ['status', 'scheduled_at'])
    op.create_index('ix_subscribers_email', 'subscribers', ['email'], unique=True)
    op.create_index('idx_delivery_campaign_variant', 'delivery_logs', ['campaign_id', 'ab_variant'])
    op.create_index('idx_delivery_provider_id', 'delivery_logs', ['provider_id'])


def downgrade() -> None:
    """Drop campaign delivery tables"""

    # Drop indexes
    op.drop_index('idx_delivery_provider_id', 'delivery_logs')
    op.drop_index('idx_delivery_campaign_variant', 'delivery_logs')
    op.drop_index('ix_subscribers_email', 'subscribers')
    op.drop_index('idx_campaign_due', 'campaigns')

    # Drop tables
    op.drop_table('ab_test_remaining')
    op.drop_table('delivery_logs')
    op.drop_table('subscribers')
    op.drop_table('campaigns')
