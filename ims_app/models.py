import json
from datetime import date, datetime, time, timezone

from flask_login import UserMixin

from . import db


def utc_now():
    return datetime.now(timezone.utc)


def _in(column, values):
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


INSTITUTE_STATUSES = ("active", "inactive")
USER_ROLES = ("admin", "teacher", "staff")
STUDENT_STATUSES = ("active", "inactive", "suspended", "graduated")
CLASS_STATUSES = ("active", "inactive", "completed")
SESSION_STATUSES = ("active", "inactive")
ENROLLMENT_STATUSES = ("active", "inactive", "completed", "dropped")
PAYMENT_STATUSES = ("paid", "unpaid", "overdue", "partial")
PAYMENT_METHODS = ("cash", "card", "bank_transfer", "online", "other")
CHANNELS = ("email", "sms", "both")
COMMUNICATION_STATUSES = ("pending", "sent", "failed", "scheduled")
RECIPIENT_TYPES = ("student", "class", "all")
ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")
ASSESSMENT_TYPES = ("exam", "quiz", "assignment", "project", "midterm", "final")
CONTENT_TYPES = ("video", "document", "link", "other")
PROGRESS_STATUSES = ("not_started", "in_progress", "completed")


class SerializerMixin:
    """Column-level dict for JSON responses; dates become ISO strings."""

    def to_dict(self, exclude=()):
        out = {}
        for col in self.__table__.columns:
            if col.key in exclude:
                continue
            value = getattr(self, col.key)
            if isinstance(value, (date, datetime, time)):
                value = value.isoformat()
            out[col.key] = value
        return out


# ==========================================
# TENANT / ACCOUNTS
# ==========================================

class Institute(SerializerMixin, db.Model):
    __tablename__ = "institutes"
    institute_id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), unique=True, nullable=False)
    name = db.Column(db.String(128), nullable=False)
    address = db.Column(db.Text)
    phone = db.Column(db.String(32))
    email = db.Column(db.String(128))
    logo_url = db.Column(db.String(255))
    status = db.Column(db.String(16), nullable=False, default="active")
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint(_in("status", INSTITUTE_STATUSES), name="ck_institute_status"),
    )


class User(UserMixin, SerializerMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    institute_id_fk = db.Column(db.Integer, db.ForeignKey("institutes.institute_id"))
    email = db.Column(db.String(128), unique=True, nullable=False)
    full_name = db.Column(db.String(128), nullable=False)
    phone = db.Column(db.String(32))
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(16), nullable=False, default="staff")  # admin, teacher, staff
    is_active = db.Column(db.Boolean, default=True)
    # Force password change on first login (teachers created by admins)
    must_change_password = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    classes = db.relationship("SchoolClass", backref="teacher", lazy=True)

    __table_args__ = (
        db.CheckConstraint(_in("role", USER_ROLES), name="ck_user_role"),
    )

    def get_id(self):
        return str(self.user_id)

    @property
    def is_admin(self):
        return (self.role or "").lower() == "admin"

    def to_dict(self, exclude=("password_hash",)):
        return super().to_dict(exclude=exclude)


# ==========================================
# STUDENTS / CLASSES
# ==========================================

class Student(SerializerMixin, db.Model):
    __tablename__ = "students"
    student_id = db.Column(db.Integer, primary_key=True)
    institute_id_fk = db.Column(db.Integer, db.ForeignKey("institutes.institute_id"))
    student_code = db.Column(db.String(32), nullable=False)
    full_name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(128))
    phone = db.Column(db.String(32))
    guardian_name = db.Column(db.String(128))
    guardian_phone = db.Column(db.String(32))
    guardian_email = db.Column(db.String(128))
    date_of_birth = db.Column(db.Date)
    address = db.Column(db.Text)
    joining_date = db.Column(db.Date, default=date.today)
    status = db.Column(db.String(16), nullable=False, default="active")
    barcode = db.Column(db.String(64), unique=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    enrollments = db.relationship("Enrollment", backref="student", lazy=True, cascade="all, delete-orphan")
    payments = db.relationship("FeePayment", backref="student", lazy=True, cascade="all, delete-orphan")

    __table_args__ = (
        db.UniqueConstraint("institute_id_fk", "student_code", name="uq_student_code_per_institute"),
        db.CheckConstraint(_in("status", STUDENT_STATUSES), name="ck_student_status"),
    )


class SchoolClass(SerializerMixin, db.Model):
    __tablename__ = "classes"
    class_id = db.Column(db.Integer, primary_key=True)
    institute_id_fk = db.Column(db.Integer, db.ForeignKey("institutes.institute_id"))
    teacher_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    class_code = db.Column(db.String(32), nullable=False)
    class_name = db.Column(db.String(128), nullable=False)
    subject = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text)
    schedule = db.Column(db.String(255))
    monthly_fee = db.Column(db.Float, nullable=False, default=0.0)
    capacity = db.Column(db.Integer, default=30)
    status = db.Column(db.String(16), nullable=False, default="active")
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    enrollments = db.relationship("Enrollment", backref="school_class", lazy=True, cascade="all, delete-orphan")
    sessions = db.relationship("ClassSession", backref="school_class", lazy=True, cascade="all, delete-orphan")

    __table_args__ = (
        db.UniqueConstraint("institute_id_fk", "class_code", name="uq_class_code_per_institute"),
        db.CheckConstraint(_in("status", CLASS_STATUSES), name="ck_class_status"),
    )


class ClassSession(SerializerMixin, db.Model):
    __tablename__ = "sessions"
    session_id = db.Column(db.Integer, primary_key=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    days_of_week = db.Column(db.String(64))  # comma separated: mon,wed,fri
    status = db.Column(db.String(16), nullable=False, default="active")
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint(_in("status", SESSION_STATUSES), name="ck_session_status"),
    )

    def to_dict(self, exclude=()):
        out = super().to_dict(exclude=exclude)
        out["days_of_week"] = [d for d in (self.days_of_week or "").split(",") if d]
        return out


class Enrollment(SerializerMixin, db.Model):
    __tablename__ = "enrollments"
    enrollment_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    enrollment_date = db.Column(db.Date, default=date.today)
    status = db.Column(db.String(16), nullable=False, default="active")
    custom_fee = db.Column(db.Float)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("student_id_fk", "class_id_fk", name="uq_enrollment_student_class"),
        db.CheckConstraint(_in("status", ENROLLMENT_STATUSES), name="ck_enrollment_status"),
    )


# ==========================================
# FEES
# ==========================================

class FeePayment(SerializerMixin, db.Model):
    __tablename__ = "fee_payments"
    payment_id = db.Column(db.Integer, primary_key=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    enrollment_id_fk = db.Column(db.Integer, db.ForeignKey("enrollments.enrollment_id", ondelete="SET NULL"))
    amount = db.Column(db.Float, nullable=False)
    payment_month = db.Column(db.Date, nullable=False)  # first day of the billed month
    payment_date = db.Column(db.Date)
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="unpaid")
    payment_method = db.Column(db.String(32))
    transaction_id = db.Column(db.String(64))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    enrollment = db.relationship("Enrollment", lazy=True)

    __table_args__ = (
        db.UniqueConstraint("enrollment_id_fk", "payment_month", name="uq_fee_payment_enrollment_month"),
        db.CheckConstraint(_in("status", PAYMENT_STATUSES), name="ck_fee_payment_status"),
        db.CheckConstraint(
            "payment_method IS NULL OR " + _in("payment_method", PAYMENT_METHODS),
            name="ck_fee_payment_method",
        ),
        db.Index("ix_fee_payments_status_due", "status", "due_date"),
    )


# ==========================================
# ATTENDANCE & ACADEMICS
# ==========================================

class Attendance(SerializerMixin, db.Model):
    __tablename__ = "attendance"
    attendance_id = db.Column(db.Integer, primary_key=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), nullable=False)
    marked_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("class_id_fk", "student_id_fk", "date", name="uq_attendance_class_student_date"),
        db.CheckConstraint(_in("status", ATTENDANCE_STATUSES), name="ck_attendance_status"),
    )


class Assessment(SerializerMixin, db.Model):
    __tablename__ = "assessments"
    assessment_id = db.Column(db.Integer, primary_key=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    assessment_type = db.Column(db.String(16), nullable=False)
    max_score = db.Column(db.Float, nullable=False, default=100.0)
    weight = db.Column(db.Float, nullable=False, default=1.0)
    date = db.Column(db.Date, nullable=False)
    created_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    school_class = db.relationship("SchoolClass", lazy=True)
    grades = db.relationship("Grade", backref="assessment", lazy=True, cascade="all, delete-orphan")

    __table_args__ = (
        db.CheckConstraint(_in("assessment_type", ASSESSMENT_TYPES), name="ck_assessment_type"),
    )


class Grade(SerializerMixin, db.Model):
    __tablename__ = "grades"
    grade_id = db.Column(db.Integer, primary_key=True)
    assessment_id_fk = db.Column(db.Integer, db.ForeignKey("assessments.assessment_id"), nullable=False)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    score = db.Column(db.Float)
    remarks = db.Column(db.Text)
    graded_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    graded_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("assessment_id_fk", "student_id_fk", name="uq_grade_assessment_student"),
    )


class Tutorial(SerializerMixin, db.Model):
    __tablename__ = "tutorials"
    tutorial_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    content_url = db.Column(db.String(500))
    content_type = db.Column(db.String(16))
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id", ondelete="SET NULL"))
    institute_id_fk = db.Column(db.Integer, db.ForeignKey("institutes.institute_id", ondelete="SET NULL"))
    is_public = db.Column(db.Boolean, default=False)
    created_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)

    progress = db.relationship("TutorialProgress", backref="tutorial", lazy=True, cascade="all, delete-orphan")

    __table_args__ = (
        db.CheckConstraint(
            "content_type IS NULL OR " + _in("content_type", CONTENT_TYPES),
            name="ck_tutorial_content_type",
        ),
    )


class TutorialProgress(SerializerMixin, db.Model):
    __tablename__ = "tutorial_progress"
    progress_id = db.Column(db.Integer, primary_key=True)
    tutorial_id_fk = db.Column(db.Integer, db.ForeignKey("tutorials.tutorial_id"), nullable=False)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("students.student_id"), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="not_started")
    progress_percentage = db.Column(db.Integer, default=0)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint("tutorial_id_fk", "student_id_fk", name="uq_tutorial_progress"),
        db.CheckConstraint(_in("status", PROGRESS_STATUSES), name="ck_tutorial_progress_status"),
    )


# ==========================================
# COMMUNICATION & AUDIT
# ==========================================

class Communication(SerializerMixin, db.Model):
    """
    Outbound message log. Rows are only ever appended; reminder jobs and
    manual sends each write one row per message.
    """
    __tablename__ = "communications"
    communication_id = db.Column(db.Integer, primary_key=True)
    institute_id_fk = db.Column(db.Integer, db.ForeignKey("institutes.institute_id", ondelete="SET NULL"), index=True)
    recipient_type = db.Column(db.String(16), nullable=False)
    recipient_id = db.Column(db.Integer)
    channel = db.Column(db.String(8), nullable=False)
    subject = db.Column(db.String(255))
    message = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")
    kind = db.Column(db.String(32), default="manual")  # manual, payment_reminder
    # Identifies one logical message (e.g. the 3-day reminder for a payment)
    dedupe_key = db.Column(db.String(96), index=True)
    payment_id_fk = db.Column(db.Integer, db.ForeignKey("fee_payments.payment_id", ondelete="SET NULL"))
    scheduled_at = db.Column(db.DateTime)
    sent_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    metadata_json = db.Column(db.Text)
    created_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.CheckConstraint(_in("recipient_type", RECIPIENT_TYPES), name="ck_communication_recipient_type"),
        db.CheckConstraint(_in("channel", CHANNELS), name="ck_communication_channel"),
        db.CheckConstraint(_in("status", COMMUNICATION_STATUSES), name="ck_communication_status"),
        db.Index("ix_communications_payment_kind", "payment_id_fk", "kind"),
    )

    @property
    def meta(self):
        try:
            return json.loads(self.metadata_json) if self.metadata_json else {}
        except ValueError:
            return {}

    def to_dict(self, exclude=("metadata_json",)):
        out = super().to_dict(exclude=exclude)
        out["metadata"] = self.meta
        return out


class NotificationPreference(SerializerMixin, db.Model):
    __tablename__ = "notification_preferences"
    preference_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, unique=True)
    email_notifications = db.Column(db.Boolean, default=True)
    sms_notifications = db.Column(db.Boolean, default=False)
    whatsapp_notifications = db.Column(db.Boolean, default=False)
    notify_payments = db.Column(db.Boolean, default=True)
    notify_attendance = db.Column(db.Boolean, default=True)
    notify_assessments = db.Column(db.Boolean, default=True)
    notify_enrollments = db.Column(db.Boolean, default=True)
    notify_announcements = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, onupdate=utc_now)


class NotificationLog(SerializerMixin, db.Model):
    __tablename__ = "notification_logs"
    log_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    notification_type = db.Column(db.String(32), nullable=False)
    channels = db.Column(db.String(64))
    subject = db.Column(db.String(255))
    message = db.Column(db.Text)
    status = db.Column(db.String(16), default="sent")
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)


class ActivityLog(SerializerMixin, db.Model):
    __tablename__ = "activity_logs"
    log_id = db.Column(db.Integer, primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    action = db.Column(db.String(32), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64))
    description = db.Column(db.String(255))
    metadata_json = db.Column(db.Text)
    ip_address = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=utc_now)
