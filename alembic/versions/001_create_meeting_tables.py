"""Create meetings, recording_files and transcripts

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATUS_VALUES = ('pending', 'processing', 'completed', 'failed')


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)

    # Skip if meetings table already exists (created by create_tables in development)
    if 'meetings' in inspector.get_table_names():
        return

    op.create_table(
        'meetings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('platform', sa.Enum('tencent', 'lark', name='meeting_platform'), nullable=False),
        sa.Column('meeting_id', sa.String(64), nullable=False),
        sa.Column('sub_meeting_id', sa.String(64), nullable=False, server_default='__ROOT__'),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('meeting_code', sa.String(32), nullable=True),
        sa.Column('meeting_type', sa.Integer(), nullable=True),
        sa.Column('host_user_id', sa.String(128), nullable=True),
        sa.Column('host_name', sa.String(255), nullable=True),
        sa.Column('scheduled_start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scheduled_end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('participant_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('has_recording', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('recording_status', sa.Enum(*STATUS_VALUES, name='recording_status'), nullable=False, server_default='pending'),
        sa.Column('processing_status', sa.Enum(*STATUS_VALUES, name='processing_status'), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('platform', 'meeting_id', 'sub_meeting_id', name='uq_meetings_natural_key'),
    )

    op.create_index('ix_meetings_processing_status', 'meetings', ['processing_status'])
    op.create_index('ix_meetings_created_at', 'meetings', ['created_at'])

    op.create_table(
        'recording_files',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('meeting_record_id', sa.String(36), sa.ForeignKey('meetings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_object_id', sa.String(255), nullable=False),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('status', sa.Enum(*STATUS_VALUES, name='recording_file_status'), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('meeting_record_id', 'file_object_id', name='uq_recording_files_meeting_file'),
    )

    op.create_index('ix_recording_files_meeting_record_id', 'recording_files', ['meeting_record_id'])

    op.create_table(
        'transcripts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('recording_file_id', sa.String(36), sa.ForeignKey('recording_files.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_format', sa.String(16), nullable=False, server_default='text'),
        sa.Column('character_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('transcripts')
    op.drop_index('ix_recording_files_meeting_record_id', table_name='recording_files')
    op.drop_table('recording_files')
    op.drop_index('ix_meetings_created_at', table_name='meetings')
    op.drop_index('ix_meetings_processing_status', table_name='meetings')
    op.drop_table('meetings')

    for enum_name in ('recording_file_status', 'processing_status', 'recording_status', 'meeting_platform'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
