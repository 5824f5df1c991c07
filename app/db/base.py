import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


def init_db(max_attempts: int = 30, delay_seconds: float = 2):
    """Wait for the database, then create the users, subscriptions and payments tables."""
    from app.db.session import engine
    from app.models import Payment, Subscription, User  # noqa: F401

    for attempt in range(1, max_attempts + 1):
        try:
            with engine.begin() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError as e:
            if attempt == max_attempts:
                logger.error(f"Banco indisponível após {max_attempts} tentativas: {e}")
                raise
            logger.warning(f"Banco ainda indisponível ({attempt}/{max_attempts}), nova tentativa em {delay_seconds}s")
            time.sleep(delay_seconds)

    Base.metadata.create_all(bind=engine)
    logger.info("Tabelas de billing criadas/atualizadas")
