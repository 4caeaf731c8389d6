from datetime import date

from ims_app import db
from ims_app.models import SchoolClass, Enrollment, Attendance, Assessment, Grade, Student


def _second_class(app, institute_id, code="SCI-201", name="Physics"):
    with app.app_context():
        c = SchoolClass(institute_id_fk=institute_id, class_code=code, class_name=name,
                        subject="Science", monthly_fee=120.0)
        db.session.add(c)
        db.session.commit()
        return c.class_id


def _enrollment_status(app, student_id):
    with app.app_context():
        rows = db.session.query(Enrollment).filter_by(student_id_fk=student_id).all()
        return {e.class_id_fk: e.status for e in rows}


def test_list_students_scoped_to_institute(client, seed, login):
    login()
    items = client.get("/students/").get_json()["data"]["items"]
    assert [s["student_code"] for s in items] == ["S-001"]


def test_platform_admin_sees_all_students(client, seed, login):
    login("root@example.com")
    items = client.get("/students/").get_json()["data"]["items"]
    assert {s["student_code"] for s in items} == {"S-001", "O-001"}


def test_create_student_with_classes(app, client, seed, login):
    physics = _second_class(app, seed.institute)
    headers = login()
    resp = client.post("/students/", json={
        "student_code": "S-002",
        "full_name": "Nia New",
        "guardian_email": "guardian@example.com",
        "date_of_birth": "2010-06-01",
        "class_ids": [seed.klass, physics],
    }, headers=headers)
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["institute_id_fk"] == seed.institute
    assert data["date_of_birth"] == "2010-06-01"
    assert data["status"] == "active"
    assert {e["class"]["class_code"] for e in data["enrollments"]} == {"MATH-101", "SCI-201"}


def test_create_student_rejects_foreign_class(client, seed, login):
    headers = login()
    resp = client.post("/students/", json={
        "student_code": "S-003", "full_name": "X", "class_ids": [seed.other_class],
    }, headers=headers)
    assert resp.status_code == 400


def test_create_student_requires_code_and_name(client, seed, login):
    headers = login()
    assert client.post("/students/", json={"full_name": "No Code"}, headers=headers).status_code == 400


def test_duplicate_student_code_is_integrity_error(client, seed, login):
    headers = login()
    resp = client.post("/students/", json={"student_code": "S-001", "full_name": "Dup"}, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "integrity_error"


def test_update_syncs_enrollments(app, client, seed, login):
    physics = _second_class(app, seed.institute)
    headers = login()

    resp = client.put(f"/students/{seed.student}", json={"class_ids": [physics], "phone": "+1555"},
                      headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["phone"] == "+1555"
    assert _enrollment_status(app, seed.student) == {seed.klass: "dropped", physics: "active"}

    # Re-adding a dropped class re-activates the same enrollment row
    client.put(f"/students/{seed.student}", json={"class_ids": [seed.klass, physics]}, headers=headers)
    assert _enrollment_status(app, seed.student) == {seed.klass: "active", physics: "active"}
    with app.app_context():
        assert db.session.query(Enrollment).filter_by(student_id_fk=seed.student).count() == 2

    client.put(f"/students/{seed.student}", json={"class_ids": []}, headers=headers)
    assert set(_enrollment_status(app, seed.student).values()) == {"dropped"}


def test_update_without_class_ids_keeps_enrollments(app, client, seed, login):
    headers = login()
    client.patch(f"/students/{seed.student}", json={"notes": "Prefers mornings"}, headers=headers)
    assert _enrollment_status(app, seed.student) == {seed.klass: "active"}


def test_other_institute_student_is_not_found(client, seed, login):
    headers = login()
    assert client.get(f"/students/{seed.other_student}").status_code == 404
    assert client.put(f"/students/{seed.other_student}", json={"notes": "x"}, headers=headers).status_code == 404


def test_delete_student_admin_only(client, seed, login):
    headers = login("staff@example.com")
    assert client.delete(f"/students/{seed.student}", headers=headers).status_code == 403
    client.post("/auth/logout")
    headers = login()
    assert client.delete(f"/students/{seed.student}", headers=headers).status_code == 200
    assert client.get(f"/students/{seed.student}").status_code == 404


def test_bulk_create_reports_failed_batches(app, client, seed, login):
    headers = login()
    rows = [{"student_code": f"BULK-{i:03d}", "full_name": f"Bulk {i}"} for i in range(60)]
    # Second batch (rows 50..59) contains an invalid row and is rolled back as a whole
    rows[55] = {"full_name": "Missing code"}
    resp = client.post("/students/bulk", json={"students": rows}, headers=headers)
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["imported"] == 50
    assert data["failed"] == 10
    assert len(data["errors"]) == 1
    assert data["errors"][0].startswith("Batch 2")
    with app.app_context():
        assert db.session.query(Student).filter(Student.student_code.like("BULK-%")).count() == 50


def test_bulk_create_requires_rows(client, seed, login):
    headers = login()
    assert client.post("/students/bulk", json={"students": []}, headers=headers).status_code == 400


def test_search_and_barcode(client, seed, login):
    login()
    items = client.get("/students/search?q=sam").get_json()["data"]["items"]
    assert [i["student_code"] for i in items] == ["S-001"]
    assert client.get("/students/search?q=olive").get_json()["data"]["items"] == []
    assert client.get("/students/search").get_json()["data"]["items"] == []

    assert client.get("/students/barcode/BC-0001").get_json()["data"]["student_id"] == seed.student
    assert client.get("/students/barcode/S-001").get_json()["data"]["student_id"] == seed.student
    assert client.get("/students/barcode/O-001").status_code == 404


def test_attendance_history_and_report_card(app, client, seed, login):
    with app.app_context():
        for day, status in ((1, "present"), (2, "late"), (3, "absent"), (4, "present")):
            db.session.add(Attendance(class_id_fk=seed.klass, student_id_fk=seed.student,
                                      date=date(2025, 3, day), status=status))
        quiz = Assessment(class_id_fk=seed.klass, title="Quiz 1", assessment_type="quiz",
                          max_score=10, weight=1, date=date(2025, 3, 2))
        exam = Assessment(class_id_fk=seed.klass, title="Midterm", assessment_type="midterm",
                          max_score=100, weight=3, date=date(2025, 3, 9))
        db.session.add_all([quiz, exam])
        db.session.flush()
        db.session.add_all([
            Grade(assessment_id_fk=quiz.assessment_id, student_id_fk=seed.student, score=6),
            Grade(assessment_id_fk=exam.assessment_id, student_id_fk=seed.student, score=80),
        ])
        db.session.commit()
    login()

    history = client.get(f"/students/{seed.student}/attendance").get_json()["data"]
    assert history["stats"]["total"] == 4
    assert history["stats"]["attendance_rate"] == 75.0
    ranged = client.get(f"/students/{seed.student}/attendance?start=2025-03-02&end=2025-03-03").get_json()
    assert ranged["data"]["stats"]["total"] == 2

    card = client.get(f"/students/{seed.student}/report-card").get_json()["data"]
    (algebra,) = card["classes"]
    # (60 * 1 + 80 * 3) / 4
    assert algebra["average"] == 75.0
    assert card["overall_average"] == 75.0
    assert card["attendance_rate"] == 75.0


def test_student_payment_summary_route(client, seed, login):
    login()
    data = client.get(f"/students/{seed.student}/payment-summary").get_json()["data"]
    assert data["total_payments"] == 0
