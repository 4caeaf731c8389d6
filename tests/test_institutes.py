def test_institute_admin_sees_only_own_institute(client, seed, login):
    login()
    items = client.get("/institutes/").get_json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["code"] == "MAIN"
    assert items[0]["student_count"] == 1
    assert items[0]["class_count"] == 1
    assert client.get(f"/institutes/{seed.other_institute}").status_code == 404


def test_platform_admin_manages_institutes(client, seed, login):
    headers = login("root@example.com")
    items = client.get("/institutes/").get_json()["data"]["items"]
    assert {i["code"] for i in items} == {"MAIN", "OTHER"}

    resp = client.post("/institutes/", json={"code": "NEW", "name": "North Branch"}, headers=headers)
    assert resp.status_code == 201
    new_id = resp.get_json()["data"]["institute_id"]

    resp = client.put(f"/institutes/{new_id}", json={"status": "inactive"}, headers=headers)
    assert resp.get_json()["data"]["status"] == "inactive"

    assert client.delete(f"/institutes/{new_id}", headers=headers).status_code == 200
    assert client.get(f"/institutes/{new_id}").status_code == 404


def test_institute_admin_cannot_create_or_delete(client, seed, login):
    headers = login()
    assert client.post("/institutes/", json={"code": "X", "name": "X"}, headers=headers).status_code == 403
    assert client.delete(f"/institutes/{seed.institute}", headers=headers).status_code == 403
    resp = client.patch(f"/institutes/{seed.institute}", json={"phone": "+1000"}, headers=headers)
    assert resp.get_json()["data"]["phone"] == "+1000"


def test_institute_validation(client, seed, login):
    headers = login("root@example.com")
    assert client.post("/institutes/", json={"name": "No code"}, headers=headers).status_code == 400
    assert client.post("/institutes/", json={"code": "Z", "name": "Z", "status": "closed"},
                       headers=headers).status_code == 400
    assert client.post("/institutes/", json={"code": "MAIN", "name": "Dup"}, headers=headers).status_code == 400
