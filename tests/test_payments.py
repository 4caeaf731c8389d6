from datetime import date, timedelta

from ims_app import db
from ims_app.models import FeePayment, ActivityLog, Enrollment


def _payment(app, student_id, status="unpaid", due=None, amount=100.0):
    due = due or date(2025, 3, 5)
    with app.app_context():
        p = FeePayment(student_id_fk=student_id, amount=amount, payment_month=due.replace(day=1),
                       due_date=due, status=status)
        db.session.add(p)
        db.session.commit()
        return p.payment_id


def test_payments_require_login(client, seed):
    resp = client.get("/payments/")
    assert resp.status_code == 401
    assert resp.get_json()["error"]["code"] == "unauthorized"


def test_list_payments_is_scoped_and_filtered(app, client, seed, login):
    mine = _payment(app, seed.student)
    _payment(app, seed.student, status="paid")
    _payment(app, seed.other_student)
    login()

    items = client.get("/payments/").get_json()["data"]["items"]
    assert len(items) == 2
    assert all(i["student"]["student_code"] == "S-001" for i in items)

    unpaid = client.get("/payments/?status=unpaid").get_json()
    assert [i["payment_id"] for i in unpaid["data"]["items"]] == [mine]
    assert unpaid["meta"]["count"] == 1

    assert client.get("/payments/?status=bogus").status_code == 400


def test_create_payment(app, client, seed, login):
    headers = login("staff@example.com")
    resp = client.post("/payments/", json={
        "student_id_fk": seed.student,
        "amount": "75.50",
        "payment_month": "2025-04-18",
        "notes": "Walk-in",
    }, headers=headers)
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["amount"] == 75.5
    assert data["payment_month"] == "2025-04-01"
    assert data["due_date"] == "2025-04-05"
    assert data["status"] == "unpaid"

    with app.app_context():
        assert db.session.query(ActivityLog).filter_by(entity_type="payment", action="create").count() == 1


def test_create_payment_validation(client, seed, login):
    headers = login()
    assert client.post("/payments/", json={"student_id_fk": seed.student, "amount": -1},
                       headers=headers).status_code == 400
    assert client.post("/payments/", json={"student_id_fk": seed.student, "amount": 5, "status": "waived"},
                       headers=headers).status_code == 400
    assert client.post("/payments/", json={"student_id_fk": seed.other_student, "amount": 5},
                       headers=headers).status_code == 404


def test_create_payment_requires_csrf(client, seed, login):
    login()
    resp = client.post("/payments/", json={"student_id_fk": seed.student, "amount": 5})
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "csrf_invalid"


def test_teacher_cannot_create_payment(client, seed, login):
    headers = login("teacher@example.com")
    resp = client.post("/payments/", json={"student_id_fk": seed.student, "amount": 5}, headers=headers)
    assert resp.status_code == 403


def test_mark_paid(app, client, seed, login):
    payment_id = _payment(app, seed.student, status="overdue")
    headers = login()
    resp = client.post(f"/payments/{payment_id}/mark-paid",
                       json={"payment_method": "card", "transaction_id": "TX-9"}, headers=headers)
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["status"] == "paid"
    assert data["payment_method"] == "card"
    assert data["transaction_id"] == "TX-9"
    assert data["payment_date"] == date.today().isoformat()

    again = client.post(f"/payments/{payment_id}/mark-paid", json={"payment_method": "cash"}, headers=headers)
    assert again.status_code == 409


def test_mark_paid_rejects_unknown_method(app, client, seed, login):
    payment_id = _payment(app, seed.student)
    headers = login()
    resp = client.post(f"/payments/{payment_id}/mark-paid", json={"payment_method": "barter"}, headers=headers)
    assert resp.status_code == 400


def test_mark_paid_other_institute_is_not_found(app, client, seed, login):
    payment_id = _payment(app, seed.other_student)
    headers = login()
    resp = client.post(f"/payments/{payment_id}/mark-paid", json={"payment_method": "cash"}, headers=headers)
    assert resp.status_code == 404


def test_partial_status(app, client, seed, login):
    payment_id = _payment(app, seed.student)
    paid_id = _payment(app, seed.student, status="paid")
    headers = login()

    resp = client.post(f"/payments/{payment_id}/status", json={"status": "partial", "notes": "Half"},
                       headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["status"] == "partial"
    assert resp.get_json()["data"]["notes"] == "Half"

    assert client.post(f"/payments/{paid_id}/status", json={"status": "partial"},
                       headers=headers).status_code == 409
    assert client.post(f"/payments/{payment_id}/status", json={"status": "unpaid"},
                       headers=headers).status_code == 400


def test_receipt(app, client, seed, login):
    unpaid = _payment(app, seed.student)
    login()
    assert client.get(f"/payments/{unpaid}/receipt").status_code == 400
    assert client.get("/payments/9999/receipt").status_code == 404

    with app.app_context():
        p = db.session.get(FeePayment, unpaid)
        p.status = "paid"
        p.payment_method = "bank_transfer"
        p.payment_date = date(2025, 3, 3)
        db.session.commit()

    resp = client.get(f"/payments/{unpaid}/receipt")
    assert resp.status_code == 200
    assert resp.content_type.startswith("text/html")
    html = resp.get_data(as_text=True)
    assert "Main Campus" in html
    assert "Sam Student" in html
    assert "March 2025" in html
    assert "bank transfer" in html
    assert "100.00" in html


def test_overdue_list(app, client, seed, login):
    old = date.today() - timedelta(days=10)
    _payment(app, seed.student, status="overdue", due=old, amount=40.0)
    _payment(app, seed.student, status="unpaid", due=date.today() - timedelta(days=2), amount=60.0)
    _payment(app, seed.student, status="paid", due=old)
    _payment(app, seed.student, status="unpaid", due=date.today() + timedelta(days=2))
    login()

    data = client.get("/payments/overdue").get_json()["data"]
    assert data["total"] == 100.0
    assert [p["days_overdue"] for p in data["payments"]] == [10, 2]


def test_student_summary(app, client, seed, login):
    _payment(app, seed.student, status="paid", amount=100.0)
    _payment(app, seed.student, status="unpaid", amount=50.0)
    _payment(app, seed.student, status="overdue", amount=25.0)
    login()

    data = client.get(f"/payments/student/{seed.student}/summary").get_json()["data"]
    assert data["total_payments"] == 3
    assert data["total_paid"] == 100.0
    assert data["total_unpaid"] == 50.0
    assert data["total_overdue"] == 25.0
    assert data["total_partial"] == 0.0
    assert client.get(f"/payments/student/{seed.other_student}/summary").status_code == 404


def test_create_payment_rejects_foreign_enrollment(app, client, seed, login):
    with app.app_context():
        foreign = Enrollment(student_id_fk=seed.other_student, class_id_fk=seed.other_class, status="active")
        db.session.add(foreign)
        db.session.commit()
        foreign_id = foreign.enrollment_id
    headers = login()

    resp = client.post("/payments/", json={
        "student_id_fk": seed.student, "amount": 10, "enrollment_id_fk": foreign_id,
    }, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "invalid_payment"
    with app.app_context():
        assert db.session.query(FeePayment).filter_by(enrollment_id_fk=foreign_id).count() == 0

    resp = client.post("/payments/", json={
        "student_id_fk": seed.student, "amount": 10, "enrollment_id_fk": seed.enrollment,
    }, headers=headers)
    assert resp.status_code == 201
    assert resp.get_json()["data"]["enrollment_id_fk"] == seed.enrollment
