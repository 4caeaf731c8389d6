from contextlib import contextmanager

from flask import current_app
from sqlalchemy.orm import Session

from . import db


class ConfigurationError(RuntimeError):
    """A job needs a collaborator (credentials, provider) that is not configured."""


def require_service_bind():
    if not current_app.config.get("SERVICE_DATABASE_URL"):
        raise ConfigurationError("Service database URL not configured")
    try:
        return db.engines["service"]
    except KeyError:
        raise ConfigurationError("Service database bind not initialised") from None


@contextmanager
def service_session():
    """Session on the privileged bind, wrapped in a single transaction.

    Commits when the block exits cleanly, rolls back on any exception.
    """
    engine = require_service_bind()
    with Session(engine, expire_on_commit=False) as session:
        with session.begin():
            yield session
