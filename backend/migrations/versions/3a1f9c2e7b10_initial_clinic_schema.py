"""Initial clinic schema

Revision ID: 3a1f9c2e7b10
Revises:
Create Date: 2026-10-18 10:12:31.402117
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3a1f9c2e7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*names):
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True)
        for name in names
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('password_hash', sa.Text(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        *_timestamps('created_at', 'updated_at'),
        sa.CheckConstraint("role in ('ADMIN','THERAPIST','PATIENT')", name='ck_users_role'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'services',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=False),
        sa.Column('price', sa.Float(), nullable=False),
        sa.Column('image_url', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps('created_at', 'updated_at'),
        sa.CheckConstraint('duration >= 1', name='ck_services_duration'),
        sa.CheckConstraint('price >= 0', name='ck_services_price'),
    )

    op.create_table(
        'therapist_services',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('therapist_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('therapist_id', 'service_id', name='uq_therapist_service'),
    )
    op.create_index('ix_therapist_services_therapist_id', 'therapist_services', ['therapist_id'])
    op.create_index('ix_therapist_services_service_id', 'therapist_services', ['service_id'])

    op.create_table(
        'appointments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('patient_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('therapist_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        *_timestamps('created_at', 'updated_at'),
        sa.CheckConstraint(
            "status in ('SCHEDULED','CONFIRMED','RESCHEDULED','COMPLETED','CANCELLED')",
            name='ck_appointments_status',
        ),
    )
    op.create_index('idx_appointments_date', 'appointments', ['date'])
    op.create_index('idx_appointments_therapist', 'appointments', ['therapist_id'])
    op.create_index('idx_appointments_patient', 'appointments', ['patient_id'])

    op.create_table(
        'appointment_services',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('appointment_id', sa.String(length=36), sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id'), nullable=False),
        sa.UniqueConstraint('appointment_id', 'service_id', name='uq_appointment_service'),
    )
    op.create_index('ix_appointment_services_appointment_id', 'appointment_services', ['appointment_id'])
    op.create_index('ix_appointment_services_service_id', 'appointment_services', ['service_id'])

    op.create_table(
        'therapist_notes',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('appointment_id', sa.String(length=36), sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('therapist_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        *_timestamps('created_at', 'updated_at'),
    )
    op.create_index('ix_therapist_notes_appointment_id', 'therapist_notes', ['appointment_id'])
    op.create_index('ix_therapist_notes_therapist_id', 'therapist_notes', ['therapist_id'])

    op.create_table(
        'survey_responses',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('appointment_id', sa.String(length=36), sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('patient_id', sa.String(length=36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('satisfaction', sa.Integer(), nullable=False),
        sa.Column('comments', sa.Text(), nullable=True),
        *_timestamps('created_at'),
        sa.CheckConstraint('satisfaction between 1 and 5', name='ck_survey_satisfaction'),
    )
    op.create_index('ix_survey_responses_patient_id', 'survey_responses', ['patient_id'])

    op.create_table(
        'appointment_activity_logs',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('appointment_id', sa.String(length=36), sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('previous_status', sa.String(), nullable=True),
        sa.Column('new_status', sa.String(), nullable=True),
        sa.Column('previous_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('new_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        *_timestamps('created_at'),
    )
    op.create_index('ix_appointment_activity_logs_appointment_id', 'appointment_activity_logs', ['appointment_id'])

    op.create_table(
        'access_log',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('actor_id', sa.String(length=36), nullable=False),
        sa.Column('access_type', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=False),
        sa.Column('decision', sa.String(), nullable=False),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        *_timestamps('created_at'),
        sa.CheckConstraint(
            "access_type in ('create','view','update','delete','verify')",
            name='ck_access_log_type',
        ),
    )
    op.create_index('idx_access_log_actor', 'access_log', ['actor_id'])
    op.create_index('idx_access_log_resource', 'access_log', ['resource_type', 'resource_id'])

    op.create_table(
        'schedules',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('therapist_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id', ondelete='CASCADE'), nullable=False),
        sa.Column('day_of_week', sa.String(), nullable=False),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps('created_at'),
        sa.CheckConstraint(
            "day_of_week in ('MONDAY','TUESDAY','WEDNESDAY','THURSDAY','FRIDAY','SATURDAY','SUNDAY')",
            name='ck_schedules_day',
        ),
    )
    op.create_index('idx_schedules_therapist_day', 'schedules', ['therapist_id', 'day_of_week'])


def downgrade() -> None:
    op.drop_table('schedules')
    op.drop_table('access_log')
    op.drop_table('appointment_activity_logs')
    op.drop_table('survey_responses')
    op.drop_table('therapist_notes')
    op.drop_table('appointment_services')
    op.drop_table('appointments')
    op.drop_table('therapist_services')
    op.drop_table('services')
    op.drop_table('users')
