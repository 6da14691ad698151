from __future__ import annotations

# isort: off
import farecheck.models  # noqa: F401
# isort: on

from farecheck.core.config import settings
from farecheck.core.db import engine
from farecheck.core.logging import get_logger, log_event
from farecheck.core.models import Base

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)
        log_event(logger, "bootstrap.schema.created", tables=len(Base.metadata.tables))
