from datetime import date

from ims_app import db
from ims_app.models import Attendance, Student, Enrollment


def _second_student(app, seed):
    with app.app_context():
        s = Student(institute_id_fk=seed.institute, student_code="S-002", full_name="Alex Second")
        db.session.add(s)
        db.session.flush()
        db.session.add(Enrollment(student_id_fk=s.student_id, class_id_fk=seed.klass, status="active"))
        db.session.commit()
        return s.student_id


def test_classes_for_marking(client, seed, login):
    login("teacher@example.com")
    items = client.get("/attendance/classes").get_json()["data"]["items"]
    assert [(c["class_code"], c["enrollment_count"]) for c in items] == [("MATH-101", 1)]


def test_mark_upserts_per_student_and_day(app, client, seed, login):
    second = _second_student(app, seed)
    headers = login("teacher@example.com")
    payload = {
        "class_id": seed.klass,
        "date": "2025-03-03",
        "records": [
            {"student_id": seed.student, "status": "present"},
            {"student_id": second, "status": "absent", "notes": "Sick"},
        ],
    }
    resp = client.post("/attendance/mark", json=payload, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["count"] == 2

    payload["records"] = [{"student_id": second, "status": "late"}]
    client.post("/attendance/mark", json=payload, headers=headers)

    with app.app_context():
        rows = db.session.query(Attendance).filter_by(class_id_fk=seed.klass, date=date(2025, 3, 3)).all()
        assert len(rows) == 2
        by_student = {a.student_id_fk: a for a in rows}
        assert by_student[second].status == "late"
        assert by_student[second].notes is None
        assert by_student[seed.student].marked_by_fk == seed.teacher

    roster = client.get(f"/attendance/classes/{seed.klass}/roster?date=2025-03-03").get_json()["data"]["items"]
    assert {r["full_name"]: r["attendance_status"] for r in roster} == {
        "Alex Second": "late", "Sam Student": "present",
    }


def test_mark_rejects_unknown_status(app, client, seed, login):
    headers = login()
    resp = client.post("/attendance/mark", json={
        "class_id": seed.klass, "date": "2025-03-03",
        "records": [{"student_id": seed.student, "status": "asleep"}],
    }, headers=headers)
    assert resp.status_code == 400
    with app.app_context():
        assert db.session.query(Attendance).count() == 0


def test_mark_other_institute_class_is_not_found(client, seed, login):
    headers = login()
    resp = client.post("/attendance/mark", json={
        "class_id": seed.other_class, "records": [{"student_id": seed.other_student, "status": "present"}],
    }, headers=headers)
    assert resp.status_code == 404


def test_stats_and_history(app, client, seed, login):
    second = _second_student(app, seed)
    today = date.today()
    with app.app_context():
        db.session.add_all([
            Attendance(class_id_fk=seed.klass, student_id_fk=seed.student, date=today, status="present"),
            Attendance(class_id_fk=seed.klass, student_id_fk=second, date=today, status="absent"),
        ])
        db.session.commit()
    login()

    stats = client.get("/attendance/stats").get_json()["data"]
    assert stats == {
        "totalMarkedToday": 2,
        "presentToday": 1,
        "absentToday": 1,
        "overallAttendanceRate": 50,
    }

    history = client.get(f"/attendance/classes/{seed.klass}/history").get_json()["data"]["items"]
    assert history == [{
        "date": today.isoformat(), "total": 2, "present": 1, "absent": 1,
        "late": 0, "excused": 0, "attendance_rate": 50,
    }]

    by_day = client.get(f"/attendance/classes/{seed.klass}?date={today.isoformat()}").get_json()["data"]
    assert len(by_day["items"]) == 2


def test_delete_attendance(app, client, seed, login):
    with app.app_context():
        att = Attendance(class_id_fk=seed.klass, student_id_fk=seed.student, date=date(2025, 3, 3), status="present")
        db.session.add(att)
        db.session.commit()
        att_id = att.attendance_id
    headers = login()
    assert client.delete(f"/attendance/{att_id}", headers=headers).status_code == 200
    assert client.delete(f"/attendance/{att_id}", headers=headers).status_code == 404
