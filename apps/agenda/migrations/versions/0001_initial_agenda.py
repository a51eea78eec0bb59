from alembic import op
import sqlalchemy as sa

revision = '0001_initial_agenda'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'specialties',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('name_key', sa.String(length=120), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.UniqueConstraint('name_key', name='uq_specialties_name_key'),
    )

    op.create_table(
        'doctors',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('license_number', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=120), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='UTC'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
    )
    op.create_index('ix_doctors_user_id', 'doctors', ['user_id'])

    op.create_table(
        'doctor_specialties',
        sa.Column('doctor_id', sa.String(length=36), sa.ForeignKey('doctors.id'), primary_key=True),
        sa.Column('specialty_id', sa.String(length=36), sa.ForeignKey('specialties.id'), primary_key=True),
    )

    op.create_table(
        'config_availabilities',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('doctor_id', sa.String(length=36), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('specialty_id', sa.String(length=36), sa.ForeignKey('specialties.id'), nullable=False),
        sa.Column('mode', sa.String(length=16), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('start_minute', sa.Integer(), nullable=False),
        sa.Column('end_minute', sa.Integer(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('days_of_week', sa.String(length=16), nullable=False),
        sa.Column('materialized_until', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
    )
    op.create_index('ix_config_availabilities_doctor_id', 'config_availabilities', ['doctor_id'])

    op.create_table(
        'availabilities',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('doctor_id', sa.String(length=36), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('specialty_id', sa.String(length=36), sa.ForeignKey('specialties.id'), nullable=False),
        sa.Column('config_id', sa.String(length=36), sa.ForeignKey('config_availabilities.id'), nullable=True),
        sa.Column('mode', sa.String(length=16), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='AVAILABLE'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
    )
    op.create_index('ix_availabilities_doctor_start', 'availabilities', ['doctor_id', 'start_time'])
    op.create_index('ix_availabilities_config_id', 'availabilities', ['config_id'])

    op.create_table(
        'appointments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column(
            'availability_id',
            sa.String(length=36),
            sa.ForeignKey('availabilities.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('doctor_id', sa.String(length=36), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('patient_id', sa.String(length=36), nullable=False),
        sa.Column('mode', sa.String(length=16), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='BOOKED'),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(length=36), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
    )
    op.create_index('ix_appointments_availability_id', 'appointments', ['availability_id'])
    op.create_index('ix_appointments_doctor_start', 'appointments', ['doctor_id', 'start_time'])
    op.create_index('ix_appointments_patient_start', 'appointments', ['patient_id', 'start_time'])

    op.create_table(
        'idempotency',
        sa.Column('key', sa.String(length=120), primary_key=True),
        sa.Column('ref_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)')),
    )


def downgrade() -> None:
    op.drop_table('idempotency')
    op.drop_index('ix_appointments_patient_start', table_name='appointments')
    op.drop_index('ix_appointments_doctor_start', table_name='appointments')
    op.drop_index('ix_appointments_availability_id', table_name='appointments')
    op.drop_table('appointments')
    op.drop_index('ix_availabilities_config_id', table_name='availabilities')
    op.drop_index('ix_availabilities_doctor_start', table_name='availabilities')
    op.drop_table('availabilities')
    op.drop_index('ix_config_availabilities_doctor_id', table_name='config_availabilities')
    op.drop_table('config_availabilities')
    op.drop_table('doctor_specialties')
    op.drop_index('ix_doctors_user_id', table_name='doctors')
    op.drop_table('doctors')
    op.drop_table('specialties')
