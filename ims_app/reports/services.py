"""Aggregate reports.

Every function takes the institute id explicitly (``None`` means all
institutes) so the memoized results are cached per tenant.
"""
from collections import defaultdict
from datetime import date, timedelta

from sqlalchemy import select, func

from .. import db, cache
from ..models import (
    Student, SchoolClass, User, Tutorial, Enrollment, Attendance, FeePayment,
    Assessment, Grade,
)

REPORT_TTL = 60
RISK_THRESHOLD = 75.0
GRADE_BANDS = (
    (90, "A (90-100)"),
    (80, "B (80-89)"),
    (70, "C (70-79)"),
    (60, "D (60-69)"),
    (0, "F (0-59)"),
)


def _in_institute(stmt, column, institute_id):
    return stmt if institute_id is None else stmt.where(column == institute_id)


def _count(stmt, column, institute_id):
    return db.session.scalar(_in_institute(stmt, column, institute_id)) or 0


@cache.memoize(timeout=REPORT_TTL)
def dashboard_stats(institute_id, today=None):
    today = today or date.today()
    first_of_month = today.replace(day=1)
    since = today - timedelta(days=30)

    attendance = dict(db.session.execute(_in_institute(
        select(Attendance.status, func.count(Attendance.attendance_id))
        .join(SchoolClass, SchoolClass.class_id == Attendance.class_id_fk)
        .where(Attendance.date >= since)
        .group_by(Attendance.status),
        SchoolClass.institute_id_fk, institute_id,
    )).all())
    total_attendance = sum(attendance.values())
    attended = attendance.get("present", 0) + attendance.get("late", 0)

    revenue = db.session.scalar(_in_institute(
        select(func.coalesce(func.sum(FeePayment.amount), 0.0))
        .join(Student, Student.student_id == FeePayment.student_id_fk)
        .where(FeePayment.status == "paid")
        .where(FeePayment.payment_date >= first_of_month),
        Student.institute_id_fk, institute_id,
    )) or 0.0

    return {
        "totalStudents": _count(
            select(func.count(Student.student_id)).where(Student.status == "active"),
            Student.institute_id_fk, institute_id),
        "totalClasses": _count(
            select(func.count(SchoolClass.class_id)).where(SchoolClass.status == "active"),
            SchoolClass.institute_id_fk, institute_id),
        "totalTeachers": _count(
            select(func.count(User.user_id)).where(User.role == "teacher"),
            User.institute_id_fk, institute_id),
        "totalTutorials": _count(
            select(func.count(Tutorial.tutorial_id)),
            Tutorial.institute_id_fk, institute_id),
        "activeEnrollments": _count(
            select(func.count(Enrollment.enrollment_id))
            .join(Student, Student.student_id == Enrollment.student_id_fk)
            .where(Enrollment.status == "active"),
            Student.institute_id_fk, institute_id),
        "attendanceRate": round(attended / total_attendance * 100) if total_attendance else 0,
        "revenueThisMonth": round(float(revenue), 2),
        "pendingPayments": _count(
            select(func.count(FeePayment.payment_id))
            .join(Student, Student.student_id == FeePayment.student_id_fk)
            .where(FeePayment.status.in_(("unpaid", "overdue", "partial"))),
            Student.institute_id_fk, institute_id),
    }


@cache.memoize(timeout=REPORT_TTL)
def top_classes(institute_id, limit=5):
    """Active classes ranked by active enrollment, with their 30-day attendance rate."""
    since = date.today() - timedelta(days=30)
    classes = db.session.execute(_in_institute(
        select(SchoolClass, func.count(Enrollment.enrollment_id).label("enrolled"))
        .outerjoin(Enrollment, (Enrollment.class_id_fk == SchoolClass.class_id) & (Enrollment.status == "active"))
        .where(SchoolClass.status == "active")
        .group_by(SchoolClass.class_id)
        .order_by(func.count(Enrollment.enrollment_id).desc(), SchoolClass.class_name)
        .limit(limit),
        SchoolClass.institute_id_fk, institute_id,
    )).all()
    items = []
    for c, enrolled in classes:
        rows = dict(db.session.execute(
            select(Attendance.status, func.count(Attendance.attendance_id))
            .where(Attendance.class_id_fk == c.class_id)
            .where(Attendance.date >= since)
            .group_by(Attendance.status)
        ).all())
        total = sum(rows.values())
        items.append({
            "class_id": c.class_id,
            "class_name": c.class_name,
            "subject": c.subject,
            "enrollment_count": enrolled,
            "attendance_rate": round((rows.get("present", 0) + rows.get("late", 0)) / total * 100) if total else 0,
        })
    return items


@cache.memoize(timeout=REPORT_TTL)
def financial_report(institute_id, start=None, end=None):
    q = _in_institute(
        select(FeePayment, Student)
        .join(Student, Student.student_id == FeePayment.student_id_fk),
        Student.institute_id_fk, institute_id,
    )
    if start:
        q = q.where(FeePayment.payment_month >= start.replace(day=1))
    if end:
        q = q.where(FeePayment.payment_month <= end)
    rows = db.session.execute(q).all()

    monthly = defaultdict(lambda: {"revenue": 0.0, "payments": 0})
    defaulters = {}
    stats = {"totalRevenue": 0.0, "paidAmount": 0.0, "pendingAmount": 0.0, "overdueAmount": 0.0, "totalPayments": 0}
    for p, s in rows:
        amount = float(p.amount or 0)
        stats["totalRevenue"] += amount
        stats["totalPayments"] += 1
        if p.status == "paid":
            stats["paidAmount"] += amount
            month_key = (p.payment_date or p.payment_month).strftime("%Y-%m")
            monthly[month_key]["revenue"] += amount
            monthly[month_key]["payments"] += 1
        elif p.status == "overdue":
            stats["overdueAmount"] += amount
            d = defaulters.setdefault(s.student_id, {
                "student_id": s.student_id,
                "student_name": s.full_name,
                "student_code": s.student_code,
                "total_pending": 0.0,
                "overdue_count": 0,
            })
            d["total_pending"] += amount
            d["overdue_count"] += 1
        else:
            stats["pendingAmount"] += amount

    by_class = db.session.execute(_in_institute(
        select(SchoolClass.class_name, func.sum(FeePayment.amount), func.count(func.distinct(FeePayment.student_id_fk)))
        .join(Enrollment, Enrollment.enrollment_id == FeePayment.enrollment_id_fk)
        .join(SchoolClass, SchoolClass.class_id == Enrollment.class_id_fk)
        .where(FeePayment.status == "paid")
        .group_by(SchoolClass.class_name)
        .order_by(func.sum(FeePayment.amount).desc()),
        SchoolClass.institute_id_fk, institute_id,
    )).all()

    return {
        "monthlyRevenue": [
            {"month": k, "revenue": round(v["revenue"], 2), "payments": v["payments"]}
            for k, v in sorted(monthly.items())
        ],
        "paymentStats": {k: (round(v, 2) if isinstance(v, float) else v) for k, v in stats.items()},
        "defaulters": sorted(defaulters.values(), key=lambda d: d["total_pending"], reverse=True)[:20],
        "revenueByClass": [
            {"class_name": name, "revenue": round(float(total or 0), 2), "students": students}
            for name, total, students in by_class
        ],
    }


@cache.memoize(timeout=REPORT_TTL)
def attendance_report(institute_id, start=None, end=None):
    q = _in_institute(
        select(Attendance, SchoolClass.class_name, Student)
        .join(SchoolClass, SchoolClass.class_id == Attendance.class_id_fk)
        .join(Student, Student.student_id == Attendance.student_id_fk),
        SchoolClass.institute_id_fk, institute_id,
    )
    if start:
        q = q.where(Attendance.date >= start)
    if end:
        q = q.where(Attendance.date <= end)
    rows = db.session.execute(q).all()

    daily = defaultdict(lambda: {"present": 0, "absent": 0, "late": 0, "total": 0})
    per_class = defaultdict(lambda: {"dates": set(), "present": 0, "absent": 0, "total": 0})
    per_student = {}
    totals = {"present": 0, "absent": 0, "late": 0}
    for att, class_name, student in rows:
        day = daily[att.date.isoformat()]
        day["total"] += 1
        if att.status in day:
            day[att.status] += 1
        if att.status in totals:
            totals[att.status] += 1

        cls = per_class[class_name]
        cls["dates"].add(att.date)
        cls["total"] += 1
        if att.status in ("present", "late"):
            cls["present"] += 1
        elif att.status == "absent":
            cls["absent"] += 1

        st = per_student.setdefault(student.student_id, {
            "student_id": student.student_id,
            "student_name": student.full_name,
            "student_code": student.student_code,
            "total": 0,
            "absences": 0,
            "classes": set(),
        })
        st["total"] += 1
        st["classes"].add(att.class_id_fk)
        if att.status == "absent":
            st["absences"] += 1

    daily_stats = []
    for key in sorted(daily, reverse=True)[:30]:
        d = daily[key]
        daily_stats.append({
            "date": key, **d,
            "rate": round((d["present"] + d["late"]) / d["total"] * 100, 1) if d["total"] else 0.0,
        })

    comparison = sorted(
        (
            {
                "class_name": name,
                "total_sessions": len(c["dates"]),
                "average_attendance": round(c["present"] / c["total"] * 100, 1) if c["total"] else 0.0,
                "present_count": c["present"],
                "absent_count": c["absent"],
            }
            for name, c in per_class.items()
        ),
        key=lambda c: c["average_attendance"],
        reverse=True,
    )

    risk = []
    for st in per_student.values():
        rate = (st["total"] - st["absences"]) / st["total"] * 100 if st["total"] else 0.0
        if rate < RISK_THRESHOLD:
            risk.append({
                "student_id": st["student_id"],
                "student_name": st["student_name"],
                "student_code": st["student_code"],
                "total_absences": st["absences"],
                "attendance_rate": round(rate, 1),
                "classes_enrolled": len(st["classes"]),
            })
    risk.sort(key=lambda r: r["attendance_rate"])

    total_records = len(rows)
    return {
        "dailyStats": daily_stats,
        "classComparison": comparison,
        "riskStudents": risk[:20],
        "overallStats": {
            "totalSessions": len(daily),
            "averageAttendanceRate": round((totals["present"] + totals["late"]) / total_records * 100, 1) if total_records else 0.0,
            "totalPresent": totals["present"],
            "totalAbsent": totals["absent"],
            "totalLate": totals["late"],
        },
    }


def grade_band(percentage):
    for floor, label in GRADE_BANDS:
        if percentage >= floor:
            return label
    return GRADE_BANDS[-1][1]


@cache.memoize(timeout=REPORT_TTL)
def academic_report(institute_id, start=None, end=None):
    q = _in_institute(
        select(Grade, Assessment, SchoolClass.class_name, Student)
        .join(Assessment, Assessment.assessment_id == Grade.assessment_id_fk)
        .join(SchoolClass, SchoolClass.class_id == Assessment.class_id_fk)
        .join(Student, Student.student_id == Grade.student_id_fk)
        .where(Grade.score.isnot(None)),
        SchoolClass.institute_id_fk, institute_id,
    )
    if start:
        q = q.where(Assessment.date >= start)
    if end:
        q = q.where(Assessment.date <= end)
    rows = db.session.execute(q).all()

    bands = {label: 0 for _, label in GRADE_BANDS}
    students = {}
    classes = {}
    percentages = []
    assessment_ids = set()
    for grade, assessment, class_name, student in rows:
        if not assessment.max_score:
            continue
        pct = grade.score / assessment.max_score * 100
        percentages.append(pct)
        assessment_ids.add(assessment.assessment_id)
        bands[grade_band(pct)] += 1

        s = students.setdefault(student.student_id, {
            "student_id": student.student_id,
            "student_name": student.full_name,
            "student_code": student.student_code,
            "scores": [],
        })
        s["scores"].append(pct)

        c = classes.setdefault(class_name, {"scores": [], "assessments": set(), "students": set()})
        c["scores"].append(pct)
        c["assessments"].add(assessment.assessment_id)
        c["students"].add(student.student_id)

    graded = len(percentages)
    top = [
        {
            "student_id": s["student_id"],
            "student_name": s["student_name"],
            "student_code": s["student_code"],
            "average_score": round(sum(s["scores"]) / len(s["scores"]), 1),
            "assessments_taken": len(s["scores"]),
        }
        for s in students.values()
        if len(s["scores"]) >= 3
    ]
    top.sort(key=lambda t: t["average_score"], reverse=True)

    performance = sorted(
        (
            {
                "class_name": name,
                "average_score": round(sum(c["scores"]) / len(c["scores"]), 1),
                "assessments_count": len(c["assessments"]),
                "students_count": len(c["students"]),
                "highest_score": round(max(c["scores"]), 1),
                "lowest_score": round(min(c["scores"]), 1),
            }
            for name, c in classes.items()
        ),
        key=lambda c: c["average_score"],
        reverse=True,
    )

    return {
        "gradeDistribution": [
            {"grade": label, "count": count, "percentage": round(count / graded * 100, 1) if graded else 0.0}
            for label, count in bands.items()
        ],
        "topPerformers": top[:10],
        "classPerformance": performance,
        "assessmentStats": {
            "totalAssessments": len(assessment_ids),
            "totalGrades": graded,
            "averageScore": round(sum(percentages) / graded, 1) if graded else 0.0,
            "highestScore": round(max(percentages), 1) if graded else 0.0,
            "lowestScore": round(min(percentages), 1) if graded else 0.0,
        },
    }
