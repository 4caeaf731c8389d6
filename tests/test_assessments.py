from ims_app import db
from ims_app.models import Grade


def _create(client, headers, class_id, **extra):
    payload = {"class_id_fk": class_id, "title": "Unit Test", "assessment_type": "quiz",
               "max_score": 20, "date": "2025-03-10"}
    payload.update(extra)
    return client.post("/assessments/", json=payload, headers=headers)


def test_create_and_list_assessment(client, seed, login):
    headers = login("teacher@example.com")
    resp = _create(client, headers, seed.klass)
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["weight"] == 1.0
    assert data["class"]["class_code"] == "MATH-101"
    assert data["created_by_fk"] == seed.teacher

    items = client.get(f"/assessments/?class_id={seed.klass}").get_json()["data"]["items"]
    assert [a["title"] for a in items] == ["Unit Test"]


def test_create_assessment_validation(client, seed, login):
    headers = login()
    assert _create(client, headers, seed.klass, assessment_type="essay").status_code == 400
    assert _create(client, headers, seed.klass, max_score=0).status_code == 400
    assert _create(client, headers, seed.klass, title="").status_code == 400
    assert _create(client, headers, seed.other_class).status_code == 404


def test_save_grades_upserts_and_skips_blank_rows(app, client, seed, login):
    headers = login("teacher@example.com")
    assessment_id = _create(client, headers, seed.klass).get_json()["data"]["assessment_id"]

    resp = client.post(f"/assessments/{assessment_id}/grades", json={"grades": [
        {"student_id": seed.student, "score": 15, "remarks": "Good"},
        {"student_id": seed.other_student, "score": "", "remarks": ""},
    ]}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["count"] == 1

    client.post(f"/assessments/{assessment_id}/grades", json={"grades": [
        {"student_id": seed.student, "score": 18},
    ]}, headers=headers)

    with app.app_context():
        grades = db.session.query(Grade).filter_by(assessment_id_fk=assessment_id).all()
        assert len(grades) == 1
        assert grades[0].score == 18
        assert grades[0].remarks is None
        assert grades[0].graded_by_fk == seed.teacher

    roster = client.get(f"/assessments/{assessment_id}/roster").get_json()
    assert roster["meta"]["max_score"] == 20
    assert roster["data"]["items"][0]["current_score"] == 18


def test_save_grades_rejects_out_of_range_score(app, client, seed, login):
    headers = login()
    assessment_id = _create(client, headers, seed.klass).get_json()["data"]["assessment_id"]
    resp = client.post(f"/assessments/{assessment_id}/grades", json={"grades": [
        {"student_id": seed.student, "score": 25},
    ]}, headers=headers)
    assert resp.status_code == 400
    with app.app_context():
        assert db.session.query(Grade).count() == 0


def test_class_summary(client, seed, login):
    headers = login()
    first = _create(client, headers, seed.klass, title="Quiz A").get_json()["data"]["assessment_id"]
    _create(client, headers, seed.klass, title="Quiz B", date="2025-03-01")
    client.post(f"/assessments/{first}/grades", json={"grades": [
        {"student_id": seed.student, "score": 10},
    ]}, headers=headers)

    items = client.get(f"/assessments/classes/{seed.klass}/summary").get_json()["data"]["items"]
    assert [i["title"] for i in items] == ["Quiz A", "Quiz B"]
    assert items[0]["graded_count"] == 1
    assert items[0]["average_percentage"] == 50.0
    assert items[1]["graded_count"] == 0
    assert items[1]["average_score"] is None


def test_update_and_delete_assessment(client, seed, login):
    headers = login()
    assessment_id = _create(client, headers, seed.klass).get_json()["data"]["assessment_id"]
    resp = client.put(f"/assessments/{assessment_id}", json={"title": "Renamed", "weight": 2}, headers=headers)
    assert resp.get_json()["data"]["title"] == "Renamed"
    assert resp.get_json()["data"]["weight"] == 2.0
    assert client.delete(f"/assessments/{assessment_id}", headers=headers).status_code == 200
    assert client.get(f"/assessments/{assessment_id}").status_code == 404
