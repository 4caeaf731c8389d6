from ims_app import db
from ims_app.models import Student, Enrollment


def test_list_classes_with_enrollment_counts(client, seed, login):
    login()
    items = client.get("/classes/").get_json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["class_code"] == "MATH-101"
    assert items[0]["enrolled_count"] == 1
    assert items[0]["teacher"]["full_name"] == "Tia Teacher"


def test_create_class(client, seed, login):
    headers = login("staff@example.com")
    resp = client.post("/classes/", json={
        "class_code": "ENG-1", "class_name": "English", "subject": "Language",
        "monthly_fee": "90", "capacity": "12", "teacher_id_fk": seed.teacher,
    }, headers=headers)
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["institute_id_fk"] == seed.institute
    assert data["monthly_fee"] == 90.0
    assert data["capacity"] == 12
    assert data["status"] == "active"


def test_create_class_rejects_non_teacher(client, seed, login):
    headers = login()
    resp = client.post("/classes/", json={
        "class_code": "ENG-2", "class_name": "English", "subject": "Language", "teacher_id_fk": seed.staff,
    }, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "invalid_teacher"


def test_get_class_includes_roster(client, seed, login):
    login()
    data = client.get(f"/classes/{seed.klass}").get_json()["data"]
    assert data["enrolled_count"] == 1
    assert data["enrollments"][0]["student"]["student_code"] == "S-001"
    assert client.get(f"/classes/{seed.other_class}").status_code == 404


def test_enroll_and_unenroll(app, client, seed, login):
    with app.app_context():
        s = Student(institute_id_fk=seed.institute, student_code="S-002", full_name="Second")
        db.session.add(s)
        db.session.commit()
        student_id = s.student_id
    headers = login()

    resp = client.post(f"/classes/{seed.klass}/enroll", json={"student_id": student_id, "custom_fee": 70},
                       headers=headers)
    assert resp.status_code == 201
    enrollment = resp.get_json()["data"]
    assert enrollment["custom_fee"] == 70.0

    again = client.post(f"/classes/{seed.klass}/enroll", json={"student_id": student_id}, headers=headers)
    assert again.status_code == 409

    resp = client.post(f"/classes/enrollments/{enrollment['enrollment_id']}/unenroll", headers=headers)
    assert resp.get_json()["data"]["status"] == "dropped"
    with app.app_context():
        # Unenrolling keeps the row for fee history
        assert db.session.get(Enrollment, enrollment["enrollment_id"]) is not None

    # Enrolling again re-activates the dropped row
    resp = client.post(f"/classes/{seed.klass}/enroll", json={"student_id": student_id}, headers=headers)
    assert resp.status_code == 201
    assert resp.get_json()["data"]["enrollment_id"] == enrollment["enrollment_id"]


def test_enroll_student_from_other_institute(client, seed, login):
    headers = login()
    resp = client.post(f"/classes/{seed.klass}/enroll", json={"student_id": seed.other_student}, headers=headers)
    assert resp.status_code == 404


def test_sessions_crud(client, seed, login):
    headers = login()
    resp = client.post("/sessions/", json={
        "class_id_fk": seed.klass, "name": "Morning", "start_time": "09:00", "end_time": "10:30",
        "days_of_week": ["Monday", "wed", "FRI"],
    }, headers=headers)
    assert resp.status_code == 201
    session = resp.get_json()["data"]
    assert session["days_of_week"] == ["mon", "wed", "fri"]
    assert session["start_time"] == "09:00:00"

    listed = client.get(f"/classes/{seed.klass}/sessions").get_json()["data"]["items"]
    assert [s["name"] for s in listed] == ["Morning"]

    bad = client.put(f"/sessions/{session['session_id']}", json={"end_time": "08:00"}, headers=headers)
    assert bad.status_code == 400
    assert client.get(f"/sessions/{session['session_id']}").get_json()["data"]["end_time"] == "10:30:00"

    assert client.delete(f"/sessions/{session['session_id']}", headers=headers).status_code == 200
    assert client.get("/sessions/").get_json()["data"]["items"] == []


def test_session_validation(client, seed, login):
    headers = login()
    base = {"class_id_fk": seed.klass, "name": "Evening", "start_time": "18:00", "end_time": "17:00"}
    assert client.post("/sessions/", json=base, headers=headers).status_code == 400
    base.update(end_time="19:00", days_of_week="mon,someday")
    assert client.post("/sessions/", json=base, headers=headers).status_code == 400
    base.update(days_of_week="tue", class_id_fk=seed.other_class)
    assert client.post("/sessions/", json=base, headers=headers).status_code == 404


def test_delete_class_admin_only(client, seed, login):
    headers = login("staff@example.com")
    assert client.delete(f"/classes/{seed.klass}", headers=headers).status_code == 403
