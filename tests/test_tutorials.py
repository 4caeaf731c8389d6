from ims_app import db
from ims_app.models import Tutorial


def _public_tutorial_elsewhere(app, seed):
    with app.app_context():
        t = Tutorial(title="Shared Primer", institute_id_fk=seed.other_institute, is_public=True,
                     content_type="link", content_url="https://example.com/primer")
        hidden = Tutorial(title="Private Notes", institute_id_fk=seed.other_institute, is_public=False)
        db.session.add_all([t, hidden])
        db.session.commit()
        return t.tutorial_id, hidden.tutorial_id


def test_create_tutorial_for_class(client, seed, login):
    headers = login("teacher@example.com")
    resp = client.post("/tutorials/", json={
        "title": "Factoring", "content_type": "video", "content_url": "https://example.com/v",
        "class_id_fk": seed.klass,
    }, headers=headers)
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["institute_id_fk"] == seed.institute
    assert data["is_public"] is False

    items = client.get(f"/tutorials/class/{seed.klass}").get_json()["data"]["items"]
    assert [t["title"] for t in items] == ["Factoring"]


def test_create_tutorial_validation(client, seed, login):
    headers = login()
    assert client.post("/tutorials/", json={"title": "X", "content_type": "podcast"},
                       headers=headers).status_code == 400
    assert client.post("/tutorials/", json={"description": "no title"}, headers=headers).status_code == 400
    assert client.post("/tutorials/", json={"title": "X", "class_id_fk": seed.other_class},
                       headers=headers).status_code == 404


def test_public_tutorials_are_visible_but_read_only(app, client, seed, login):
    public_id, hidden_id = _public_tutorial_elsewhere(app, seed)
    headers = login()

    titles = [t["title"] for t in client.get("/tutorials/").get_json()["data"]["items"]]
    assert titles == ["Shared Primer"]
    assert client.get("/tutorials/stats").get_json()["data"]["total"] == 1
    assert client.get(f"/tutorials/{public_id}").status_code == 200
    assert client.get(f"/tutorials/{hidden_id}").status_code == 404
    assert client.put(f"/tutorials/{public_id}", json={"title": "Mine now"}, headers=headers).status_code == 404
    assert client.delete(f"/tutorials/{public_id}", headers=headers).status_code == 404


def test_progress_upsert(client, seed, login):
    headers = login()
    tutorial_id = client.post("/tutorials/", json={"title": "Fractions", "class_id_fk": seed.klass},
                              headers=headers).get_json()["data"]["tutorial_id"]

    resp = client.post(f"/tutorials/{tutorial_id}/progress",
                       json={"student_id": seed.student, "status": "in_progress", "progress_percentage": 40},
                       headers=headers)
    assert resp.status_code == 200
    progress = resp.get_json()["data"]
    assert progress["progress_percentage"] == 40
    assert progress["started_at"] is not None
    assert progress["completed_at"] is None

    resp = client.post(f"/tutorials/{tutorial_id}/progress",
                       json={"student_id": seed.student, "status": "completed", "progress_percentage": 10},
                       headers=headers)
    done = resp.get_json()["data"]
    assert done["progress_id"] == progress["progress_id"]
    assert done["progress_percentage"] == 100
    assert done["completed_at"] is not None

    summary = client.get("/tutorials/progress/summary").get_json()["data"]["items"]
    assert summary == [{
        "tutorial_id": tutorial_id, "title": "Fractions", "class_id": seed.klass, "class_name": "Algebra I",
        "total_students": 1, "completed_count": 1, "in_progress_count": 0, "not_started_count": 0,
        "completion_percentage": 100,
    }]

    student_view = client.get(f"/students/{seed.student}/tutorials").get_json()["data"]
    assert student_view["completed"] == 1
    assert student_view["items"][0]["tutorial"]["title"] == "Fractions"


def test_progress_validation(client, seed, login):
    headers = login()
    tutorial_id = client.post("/tutorials/", json={"title": "Ratios"}, headers=headers).get_json()["data"]["tutorial_id"]
    assert client.post(f"/tutorials/{tutorial_id}/progress", json={"student_id": seed.student, "status": "paused"},
                       headers=headers).status_code == 400
    assert client.post(f"/tutorials/{tutorial_id}/progress",
                       json={"student_id": seed.other_student, "status": "completed"},
                       headers=headers).status_code == 404


def test_update_and_delete_tutorial(client, seed, login):
    headers = login()
    tutorial_id = client.post("/tutorials/", json={"title": "Draft"}, headers=headers).get_json()["data"]["tutorial_id"]
    resp = client.patch(f"/tutorials/{tutorial_id}", json={"title": "Final", "is_public": "true"}, headers=headers)
    assert resp.get_json()["data"]["title"] == "Final"
    assert resp.get_json()["data"]["is_public"] is True
    assert client.delete(f"/tutorials/{tutorial_id}", headers=headers).status_code == 200
