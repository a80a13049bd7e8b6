"""Create all tables. Run on app startup."""
import logging

from sqlalchemy.engine import Engine

from dispensary.db.base import Base
from dispensary.db.session import engine as default_engine
from dispensary.models import inventory, stock_transaction, prescription, drug_interaction  # noqa: F401 - register models

logger = logging.getLogger(__name__)


def init_db(bind: Engine = None):
    bind = bind or default_engine
    Base.metadata.create_all(bind=bind)
    logger.info(f"Schema ready on {bind.url.render_as_string(hide_password=True)}")
