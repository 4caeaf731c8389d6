from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from ims_app import create_app, db
from ims_app.models import Institute, User, Student, SchoolClass, Enrollment

PASSWORD = "correct-horse-battery"
CRON_SECRET = "test-cron-secret"


@pytest.fixture()
def app(tmp_path):
    uri = f"sqlite:///{(tmp_path / 'test.db').as_posix()}"
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": uri,
        # Jobs use the privileged bind; in tests it is the same file
        "SERVICE_DATABASE_URL": uri,
        "RATELIMIT_ENABLED": False,
        "CACHE_TYPE": "NullCache",
        "REMINDER_SEND_DELAY": 0,
        "CRON_SECRET": CRON_SECRET,
        "RESEND_API_KEY": None,
        "MAIL_HOST": None,
        "TWILIO_ACCOUNT_SID": None,
        "TWILIO_AUTH_TOKEN": None,
        "TWILIO_PHONE_NUMBER": None,
        "TWILIO_WHATSAPP_NUMBER": None,
    })
    yield app
    with app.app_context():
        db.session.remove()
        for engine in db.engines.values():
            engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def seed(app):
    """Two institutes; the main one has an admin, staff, a teacher, one class and one enrolled student."""
    with app.app_context():
        main = Institute(code="MAIN", name="Main Campus", address="1 High Street")
        other = Institute(code="OTHER", name="Other Campus")
        db.session.add_all([main, other])
        db.session.flush()

        pw = generate_password_hash(PASSWORD)
        admin = User(institute_id_fk=main.institute_id, email="admin@example.com", full_name="Ada Admin",
                     role="admin", password_hash=pw, is_active=True)
        staff = User(institute_id_fk=main.institute_id, email="staff@example.com", full_name="Sol Staff",
                     role="staff", password_hash=pw, is_active=True)
        teacher = User(institute_id_fk=main.institute_id, email="teacher@example.com", full_name="Tia Teacher",
                       role="teacher", password_hash=pw, is_active=True, phone="+15550000003")
        root = User(institute_id_fk=None, email="root@example.com", full_name="Platform Root",
                    role="admin", password_hash=pw, is_active=True)
        other_admin = User(institute_id_fk=other.institute_id, email="other@example.com", full_name="Oli Other",
                           role="admin", password_hash=pw, is_active=True)
        db.session.add_all([admin, staff, teacher, root, other_admin])
        db.session.flush()

        klass = SchoolClass(institute_id_fk=main.institute_id, teacher_id_fk=teacher.user_id,
                            class_code="MATH-101", class_name="Algebra I", subject="Mathematics",
                            monthly_fee=100.0)
        other_class = SchoolClass(institute_id_fk=other.institute_id, class_code="ART-1",
                                  class_name="Drawing", subject="Art", monthly_fee=40.0)
        db.session.add_all([klass, other_class])
        db.session.flush()

        student = Student(institute_id_fk=main.institute_id, student_code="S-001", full_name="Sam Student",
                          email="sam@example.com", barcode="BC-0001")
        other_student = Student(institute_id_fk=other.institute_id, student_code="O-001",
                                full_name="Olive Outsider")
        db.session.add_all([student, other_student])
        db.session.flush()

        enrollment = Enrollment(student_id_fk=student.student_id, class_id_fk=klass.class_id, status="active")
        db.session.add(enrollment)
        db.session.commit()

        return SimpleNamespace(
            institute=main.institute_id,
            other_institute=other.institute_id,
            admin=admin.user_id,
            staff=staff.user_id,
            teacher=teacher.user_id,
            root=root.user_id,
            other_admin=other_admin.user_id,
            klass=klass.class_id,
            other_class=other_class.class_id,
            student=student.student_id,
            other_student=other_student.student_id,
            enrollment=enrollment.enrollment_id,
        )


@pytest.fixture()
def login(client):
    """Log in and return headers carrying the session's CSRF token."""
    def _login(email="admin@example.com", password=PASSWORD):
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return {"X-CSRF-Token": resp.get_json()["data"]["csrf_token"]}
    return _login


@pytest.fixture()
def cron_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}
