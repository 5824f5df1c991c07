# Import all models so Alembic can detect them
from app.models.user import User
from app.models.subscription import Subscription
from app.models.payment import Payment

__all__ = ["User", "Subscription", "Payment"]
