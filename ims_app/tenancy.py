"""Per-institute scoping of queries.

Users attached to an institute only see that institute's rows. Users with
no institute (platform admins) see everything.
"""
from flask_login import current_user


def current_institute_id():
    if not getattr(current_user, "is_authenticated", False):
        return None
    return getattr(current_user, "institute_id_fk", None)


def scope(stmt, column):
    institute_id = current_institute_id()
    if institute_id is None:
        return stmt
    return stmt.where(column == institute_id)


def owns(obj, attr="institute_id_fk"):
    institute_id = current_institute_id()
    if obj is None:
        return False
    if institute_id is None:
        return True
    return getattr(obj, attr, None) == institute_id
