from __future__ import annotations

import logging

from sqlalchemy import Engine

from hierarchy_authz.db.base import Base
from hierarchy_authz.models import authz as _models  # noqa: F401  (register tables)

logger = logging.getLogger(__name__)


def init_db(engine: Engine) -> None:
    """
    Create the metadata, hierarchy and audit tables.

    Rule-engine tables are owned by the Casbin adapter and created by it.
    """

    Base.metadata.create_all(bind=engine)
    logger.info("Authorization tables ensured url=%s", engine.url.render_as_string(hide_password=True))
