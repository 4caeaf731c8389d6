from sqlalchemy import select, or_
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..models import (
    Student, Enrollment, SchoolClass, Attendance, Assessment, Grade,
    Tutorial, TutorialProgress,
)
from ..api_utils import parse_date
from ..tenancy import scope

BULK_BATCH_SIZE = 50

STUDENT_FIELDS = (
    "student_code", "full_name", "email", "phone", "guardian_name", "guardian_phone",
    "guardian_email", "date_of_birth", "address", "joining_date", "status", "barcode", "notes",
)
STUDENT_PARSERS = {"date_of_birth": parse_date, "joining_date": parse_date}


def normalize_class_ids(raw):
    """Accept a list, a single id or a comma-separated string; returns a set of ints."""
    if raw is None:
        return None
    if isinstance(raw, (int, str)):
        raw = [p for p in str(raw).split(",") if p.strip()]
    return {int(x) for x in raw}


def sync_enrollments(student, class_ids):
    """
    Make the student's active enrollments match ``class_ids``.

    New classes get an active enrollment (an earlier dropped one is
    re-activated); classes no longer listed are marked dropped so fee
    history keeps its enrollment link.
    """
    wanted = set(class_ids)
    current = {e.class_id_fk: e for e in student.enrollments}
    added, dropped = [], []
    for class_id in wanted:
        enrollment = current.get(class_id)
        if enrollment is None:
            student.enrollments.append(Enrollment(class_id_fk=class_id, status="active"))
            added.append(class_id)
        elif enrollment.status != "active":
            enrollment.status = "active"
            added.append(class_id)
    for class_id, enrollment in current.items():
        if class_id not in wanted and enrollment.status == "active":
            enrollment.status = "dropped"
            dropped.append(class_id)
    return added, dropped


def student_detail(student):
    out = student.to_dict()
    rows = db.session.execute(
        select(Enrollment, SchoolClass)
        .join(SchoolClass, SchoolClass.class_id == Enrollment.class_id_fk)
        .where(Enrollment.student_id_fk == student.student_id)
        .order_by(SchoolClass.class_name)
    ).all()
    out["enrollments"] = [
        {
            **e.to_dict(),
            "class": {"class_id": c.class_id, "class_name": c.class_name, "class_code": c.class_code},
        }
        for e, c in rows
    ]
    return out


def bulk_create_students(rows, institute_id):
    """
    Insert students in batches of 50. A failing batch is rolled back as a
    whole and reported; later batches still run.
    """
    imported, failed, errors = 0, 0, []
    for start in range(0, len(rows), BULK_BATCH_SIZE):
        batch = rows[start:start + BULK_BATCH_SIZE]
        batch_no = start // BULK_BATCH_SIZE + 1
        try:
            for data in batch:
                student = Student(institute_id_fk=institute_id, status="active")
                for name in STUDENT_FIELDS:
                    if name not in data:
                        continue
                    value = data[name]
                    if name in STUDENT_PARSERS:
                        value = STUDENT_PARSERS[name](value)
                    elif isinstance(value, str):
                        value = value.strip() or None
                    setattr(student, name, value)
                if not student.student_code or not student.full_name:
                    raise ValueError("student_code and full_name are required")
                db.session.add(student)
            db.session.commit()
            imported += len(batch)
        except (SQLAlchemyError, ValueError) as e:
            db.session.rollback()
            failed += len(batch)
            detail = getattr(e, "orig", None) or e
            errors.append(f"Batch {batch_no}: {detail}")
    return {"imported": imported, "failed": failed, "errors": errors}


def search_students(query, limit=10):
    like = f"%{query}%"
    q = scope(
        select(Student)
        .where(Student.status == "active")
        .where(or_(Student.barcode.ilike(like), Student.student_code.ilike(like), Student.full_name.ilike(like)))
        .order_by(Student.full_name)
        .limit(limit),
        Student.institute_id_fk,
    )
    return [
        {
            "student_id": s.student_id,
            "student_code": s.student_code,
            "full_name": s.full_name,
            "barcode": s.barcode,
            "email": s.email,
            "status": s.status,
        }
        for s in db.session.execute(q).scalars()
    ]


def attendance_history(student_id, start=None, end=None):
    q = (
        select(Attendance, SchoolClass.class_name)
        .join(SchoolClass, SchoolClass.class_id == Attendance.class_id_fk)
        .where(Attendance.student_id_fk == student_id)
        .order_by(Attendance.date.desc())
    )
    if start:
        q = q.where(Attendance.date >= start)
    if end:
        q = q.where(Attendance.date <= end)
    records = []
    counts = {"present": 0, "absent": 0, "late": 0, "excused": 0}
    for att, class_name in db.session.execute(q).all():
        row = att.to_dict()
        row["class_name"] = class_name
        records.append(row)
        counts[att.status] = counts.get(att.status, 0) + 1
    total = len(records)
    attended = counts["present"] + counts["late"]
    return {
        "records": records,
        "stats": {
            **counts,
            "total": total,
            "attendance_rate": round(attended / total * 100, 1) if total else 0.0,
        },
    }


def report_card(student):
    """Weighted average per class over graded assessments, plus attendance rate."""
    rows = db.session.execute(
        select(Grade, Assessment, SchoolClass)
        .join(Assessment, Assessment.assessment_id == Grade.assessment_id_fk)
        .join(SchoolClass, SchoolClass.class_id == Assessment.class_id_fk)
        .where(Grade.student_id_fk == student.student_id)
        .where(Grade.score.isnot(None))
        .order_by(SchoolClass.class_name, Assessment.date)
    ).all()

    classes = {}
    for grade, assessment, school_class in rows:
        entry = classes.setdefault(school_class.class_id, {
            "class_id": school_class.class_id,
            "class_name": school_class.class_name,
            "subject": school_class.subject,
            "assessments": [],
            "_weighted": 0.0,
            "_weights": 0.0,
        })
        pct = (grade.score / assessment.max_score * 100) if assessment.max_score else 0.0
        entry["assessments"].append({
            "assessment_id": assessment.assessment_id,
            "title": assessment.title,
            "assessment_type": assessment.assessment_type,
            "date": assessment.date.isoformat(),
            "score": grade.score,
            "max_score": assessment.max_score,
            "percentage": round(pct, 1),
            "remarks": grade.remarks,
        })
        entry["_weighted"] += pct * (assessment.weight or 1.0)
        entry["_weights"] += (assessment.weight or 1.0)

    out_classes = []
    for entry in classes.values():
        weights = entry.pop("_weights")
        weighted = entry.pop("_weighted")
        entry["average"] = round(weighted / weights, 1) if weights else None
        out_classes.append(entry)

    averages = [c["average"] for c in out_classes if c["average"] is not None]
    attendance = attendance_history(student.student_id)["stats"]
    return {
        "student": {"student_id": student.student_id, "full_name": student.full_name, "student_code": student.student_code},
        "classes": out_classes,
        "overall_average": round(sum(averages) / len(averages), 1) if averages else None,
        "attendance_rate": attendance["attendance_rate"],
    }


def tutorial_progress(student_id):
    rows = db.session.execute(
        select(TutorialProgress, Tutorial)
        .join(Tutorial, Tutorial.tutorial_id == TutorialProgress.tutorial_id_fk)
        .where(TutorialProgress.student_id_fk == student_id)
        .order_by(Tutorial.title)
    ).all()
    items = []
    for progress, tutorial in rows:
        row = progress.to_dict()
        row["tutorial"] = {"tutorial_id": tutorial.tutorial_id, "title": tutorial.title, "content_type": tutorial.content_type}
        items.append(row)
    completed = sum(1 for p, _ in rows if p.status == "completed")
    return {"items": items, "completed": completed, "total": len(items)}

