"""create_sensor_values_and_alarms

Revision ID: a1c4e7f20b13
Revises:
Create Date: 2026-10-19 12:00:00.000000

Last-value table per detector channel and the append-only alarm journal.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'a1c4e7f20b13'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'sensor_last_values',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('site_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('channel_id', sa.String(20), nullable=False),
        sa.Column('tag_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('detector_type', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('process_value', sa.Float(), nullable=False, server_default='0'),
        sa.Column('current_value', sa.Float(), nullable=False, server_default='0'),
        sa.Column('status', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status_text', sa.String(40), nullable=False, server_default=''),
        sa.Column('units', sa.String(10), nullable=False, server_default=''),
        sa.Column('last_updated', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('topic', sa.String(200), nullable=False, server_default=''),
        sa.Column('raw_json', sa.Text(), nullable=False, server_default=''),
        sa.UniqueConstraint('site_id', 'channel_id', name='uq_sensor_last_values_site_channel'),
    )
    op.create_index('ix_sensor_last_values_site', 'sensor_last_values', ['site_id'])

    op.create_table(
        'alarms',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('site_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('sensor_tag', sa.String(100), nullable=False, server_default=''),
        sa.Column('alarm_message', sa.String(300), nullable=False, server_default=''),
        sa.Column('severity', sa.String(10), nullable=False, server_default='Low'),
        sa.Column('raw_message', sa.Text(), nullable=False, server_default=''),
        sa.Column('timestamp', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_alarms_site_timestamp', 'alarms', ['site_id', 'timestamp'])
    op.create_index('ix_alarms_sensor_tag', 'alarms', ['sensor_tag'])


def downgrade() -> None:
    op.drop_index('ix_alarms_sensor_tag', table_name='alarms')
    op.drop_index('ix_alarms_site_timestamp', table_name='alarms')
    op.drop_table('alarms')
    op.drop_index('ix_sensor_last_values_site', table_name='sensor_last_values')
    op.drop_table('sensor_last_values')
