"""initial schema: tenants, academics, fees, communications

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None


def _in(column, values):
    return sa.text(column + " IN (" + ", ".join(f"'{v}'" for v in values) + ")")


def upgrade():
    op.create_table(
        'institutes',
        sa.Column('institute_id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=128), nullable=True),
        sa.Column('logo_url', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('code'),
        sa.CheckConstraint(_in('status', ('active', 'inactive')), name='ck_institute_status'),
    )

    op.create_table(
        'users',
        sa.Column('user_id', sa.Integer(), primary_key=True),
        sa.Column('institute_id_fk', sa.Integer(), nullable=True),
        sa.Column('email', sa.String(length=128), nullable=False),
        sa.Column('full_name', sa.String(length=128), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('password_hash', sa.String(length=256), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='staff'),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('must_change_password', sa.Boolean(), nullable=True, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['institute_id_fk'], ['institutes.institute_id']),
        sa.UniqueConstraint('email'),
        sa.CheckConstraint(_in('role', ('admin', 'teacher', 'staff')), name='ck_user_role'),
    )

    op.create_table(
        'students',
        sa.Column('student_id', sa.Integer(), primary_key=True),
        sa.Column('institute_id_fk', sa.Integer(), nullable=True),
        sa.Column('student_code', sa.String(length=32), nullable=False),
        sa.Column('full_name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('guardian_name', sa.String(length=128), nullable=True),
        sa.Column('guardian_phone', sa.String(length=32), nullable=True),
        sa.Column('guardian_email', sa.String(length=128), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('joining_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['institute_id_fk'], ['institutes.institute_id']),
        sa.UniqueConstraint('barcode'),
        sa.UniqueConstraint('institute_id_fk', 'student_code', name='uq_student_code_per_institute'),
        sa.CheckConstraint(
            _in('status', ('active', 'inactive', 'suspended', 'graduated')), name='ck_student_status'
        ),
    )

    op.create_table(
        'classes',
        sa.Column('class_id', sa.Integer(), primary_key=True),
        sa.Column('institute_id_fk', sa.Integer(), nullable=True),
        sa.Column('teacher_id_fk', sa.Integer(), nullable=True),
        sa.Column('class_code', sa.String(length=32), nullable=False),
        sa.Column('class_name', sa.String(length=128), nullable=False),
        sa.Column('subject', sa.String(length=128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('schedule', sa.String(length=255), nullable=True),
        sa.Column('monthly_fee', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('capacity', sa.Integer(), nullable=True, server_default=sa.text('30')),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['institute_id_fk'], ['institutes.institute_id']),
        sa.ForeignKeyConstraint(['teacher_id_fk'], ['users.user_id']),
        sa.UniqueConstraint('institute_id_fk', 'class_code', name='uq_class_code_per_institute'),
        sa.CheckConstraint(_in('status', ('active', 'inactive', 'completed')), name='ck_class_status'),
    )

    op.create_table(
        'sessions',
        sa.Column('session_id', sa.Integer(), primary_key=True),
        sa.Column('class_id_fk', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('days_of_week', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id']),
        sa.CheckConstraint(_in('status', ('active', 'inactive')), name='ck_session_status'),
    )

    op.create_table(
        'enrollments',
        sa.Column('enrollment_id', sa.Integer(), primary_key=True),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('class_id_fk', sa.Integer(), nullable=False),
        sa.Column('enrollment_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('custom_fee', sa.Float(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id']),
        sa.UniqueConstraint('student_id_fk', 'class_id_fk', name='uq_enrollment_student_class'),
        sa.CheckConstraint(
            _in('status', ('active', 'inactive', 'completed', 'dropped')), name='ck_enrollment_status'
        ),
    )

    op.create_table(
        'fee_payments',
        sa.Column('payment_id', sa.Integer(), primary_key=True),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('enrollment_id_fk', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('payment_month', sa.Date(), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='unpaid'),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('transaction_id', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.ForeignKeyConstraint(['enrollment_id_fk'], ['enrollments.enrollment_id'], ondelete='SET NULL'),
        sa.UniqueConstraint('enrollment_id_fk', 'payment_month', name='uq_fee_payment_enrollment_month'),
        sa.CheckConstraint(
            _in('status', ('paid', 'unpaid', 'overdue', 'partial')), name='ck_fee_payment_status'
        ),
        sa.CheckConstraint(
            sa.text("payment_method IS NULL OR payment_method IN "
                    "('cash', 'card', 'bank_transfer', 'online', 'other')"),
            name='ck_fee_payment_method',
        ),
    )
    op.create_index('ix_fee_payments_status_due', 'fee_payments', ['status', 'due_date'])

    op.create_table(
        'attendance',
        sa.Column('attendance_id', sa.Integer(), primary_key=True),
        sa.Column('class_id_fk', sa.Integer(), nullable=False),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('marked_by_fk', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id']),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.ForeignKeyConstraint(['marked_by_fk'], ['users.user_id']),
        sa.UniqueConstraint('class_id_fk', 'student_id_fk', 'date', name='uq_attendance_class_student_date'),
        sa.CheckConstraint(
            _in('status', ('present', 'absent', 'late', 'excused')), name='ck_attendance_status'
        ),
    )

    op.create_table(
        'assessments',
        sa.Column('assessment_id', sa.Integer(), primary_key=True),
        sa.Column('class_id_fk', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('assessment_type', sa.String(length=16), nullable=False),
        sa.Column('max_score', sa.Float(), nullable=False, server_default=sa.text('100')),
        sa.Column('weight', sa.Float(), nullable=False, server_default=sa.text('1')),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('created_by_fk', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id']),
        sa.ForeignKeyConstraint(['created_by_fk'], ['users.user_id']),
        sa.CheckConstraint(
            _in('assessment_type', ('exam', 'quiz', 'assignment', 'project', 'midterm', 'final')),
            name='ck_assessment_type',
        ),
    )

    op.create_table(
        'grades',
        sa.Column('grade_id', sa.Integer(), primary_key=True),
        sa.Column('assessment_id_fk', sa.Integer(), nullable=False),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('remarks', sa.Text(), nullable=True),
        sa.Column('graded_by_fk', sa.Integer(), nullable=True),
        sa.Column('graded_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['assessment_id_fk'], ['assessments.assessment_id']),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.ForeignKeyConstraint(['graded_by_fk'], ['users.user_id']),
        sa.UniqueConstraint('assessment_id_fk', 'student_id_fk', name='uq_grade_assessment_student'),
    )

    op.create_table(
        'tutorials',
        sa.Column('tutorial_id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('content_url', sa.String(length=500), nullable=True),
        sa.Column('content_type', sa.String(length=16), nullable=True),
        sa.Column('class_id_fk', sa.Integer(), nullable=True),
        sa.Column('institute_id_fk', sa.Integer(), nullable=True),
        sa.Column('is_public', sa.Boolean(), nullable=True, server_default=sa.text('0')),
        sa.Column('created_by_fk', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['institute_id_fk'], ['institutes.institute_id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['created_by_fk'], ['users.user_id']),
        sa.CheckConstraint(
            sa.text("content_type IS NULL OR content_type IN ('video', 'document', 'link', 'other')"),
            name='ck_tutorial_content_type',
        ),
    )

    op.create_table(
        'tutorial_progress',
        sa.Column('progress_id', sa.Integer(), primary_key=True),
        sa.Column('tutorial_id_fk', sa.Integer(), nullable=False),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='not_started'),
        sa.Column('progress_percentage', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tutorial_id_fk'], ['tutorials.tutorial_id']),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.UniqueConstraint('tutorial_id_fk', 'student_id_fk', name='uq_tutorial_progress'),
        sa.CheckConstraint(
            _in('status', ('not_started', 'in_progress', 'completed')), name='ck_tutorial_progress_status'
        ),
    )

    op.create_table(
        'communications',
        sa.Column('communication_id', sa.Integer(), primary_key=True),
        sa.Column('institute_id_fk', sa.Integer(), nullable=True),
        sa.Column('recipient_type', sa.String(length=16), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=True),
        sa.Column('channel', sa.String(length=8), nullable=False),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('kind', sa.String(length=32), nullable=True, server_default='manual'),
        sa.Column('dedupe_key', sa.String(length=96), nullable=True),
        sa.Column('payment_id_fk', sa.Integer(), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_by_fk', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['institute_id_fk'], ['institutes.institute_id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['payment_id_fk'], ['fee_payments.payment_id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['created_by_fk'], ['users.user_id']),
        sa.CheckConstraint(
            _in('recipient_type', ('student', 'class', 'all')), name='ck_communication_recipient_type'
        ),
        sa.CheckConstraint(_in('channel', ('email', 'sms', 'both')), name='ck_communication_channel'),
        sa.CheckConstraint(
            _in('status', ('pending', 'sent', 'failed', 'scheduled')), name='ck_communication_status'
        ),
    )
    op.create_index('ix_communications_institute_id_fk', 'communications', ['institute_id_fk'])
    op.create_index('ix_communications_dedupe_key', 'communications', ['dedupe_key'])
    op.create_index('ix_communications_payment_kind', 'communications', ['payment_id_fk', 'kind'])

    op.create_table(
        'notification_preferences',
        sa.Column('preference_id', sa.Integer(), primary_key=True),
        sa.Column('user_id_fk', sa.Integer(), nullable=False),
        sa.Column('email_notifications', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('sms_notifications', sa.Boolean(), nullable=True, server_default=sa.text('0')),
        sa.Column('whatsapp_notifications', sa.Boolean(), nullable=True, server_default=sa.text('0')),
        sa.Column('notify_payments', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('notify_attendance', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('notify_assessments', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('notify_enrollments', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('notify_announcements', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id_fk'], ['users.user_id']),
        sa.UniqueConstraint('user_id_fk'),
    )

    op.create_table(
        'notification_logs',
        sa.Column('log_id', sa.Integer(), primary_key=True),
        sa.Column('user_id_fk', sa.Integer(), nullable=False),
        sa.Column('notification_type', sa.String(length=32), nullable=False),
        sa.Column('channels', sa.String(length=64), nullable=True),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=True, server_default='sent'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id_fk'], ['users.user_id']),
    )

    op.create_table(
        'activity_logs',
        sa.Column('log_id', sa.Integer(), primary_key=True),
        sa.Column('user_id_fk', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id_fk'], ['users.user_id']),
    )


def downgrade():
    op.drop_table('activity_logs')
    op.drop_table('notification_logs')
    op.drop_table('notification_preferences')
    op.drop_index('ix_communications_payment_kind', table_name='communications')
    op.drop_index('ix_communications_dedupe_key', table_name='communications')
    op.drop_index('ix_communications_institute_id_fk', table_name='communications')
    op.drop_table('communications')
    op.drop_table('tutorial_progress')
    op.drop_table('tutorials')
    op.drop_table('grades')
    op.drop_table('assessments')
    op.drop_table('attendance')
    op.drop_index('ix_fee_payments_status_due', table_name='fee_payments')
    op.drop_table('fee_payments')
    op.drop_table('enrollments')
    op.drop_table('sessions')
    op.drop_table('classes')
    op.drop_table('students')
    op.drop_table('users')
    op.drop_table('institutes')
