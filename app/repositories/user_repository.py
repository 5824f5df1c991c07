from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.user import User

QUOTA_FIELDS = ("project_ideas_left", "collaboration_requests_left")


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_external_id(self, external_id: str) -> Optional[User]:
        if not external_id:
            return None
        return self.db.query(User).filter(User.external_id == external_id).first()

    def list_by_plan(self, plan: str) -> List[User]:
        return self.db.query(User).filter(User.plan == plan).order_by(User.id).all()

    def create(self, user: User) -> User:
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def update(self, user: User) -> User:
        self.db.commit()
        self.db.refresh(user)
        return user

    def reset_free_quotas(self, project_ideas: int, collaboration_requests: int) -> int:
        """Reset quotas of every free-plan user in one statement. Returns affected rows."""
        result = self.db.execute(
            update(User)
            .where(User.plan == "free")
            .values(
                project_ideas_left=project_ideas,
                collaboration_requests_left=collaboration_requests,
            )
        )
        self.db.commit()
        return result.rowcount or 0

    def decrement_quota_if_positive(self, user_id: str, field: str) -> bool:
        """Atomic decrement-if-positive; False when the quota was already exhausted."""
        if field not in QUOTA_FIELDS:
            raise ValueError(f"Unknown quota field: {field}")
        column = getattr(User, field)
        result = self.db.execute(
            update(User)
            .where(User.id == user_id, column > 0)
            .values({field: column - 1})
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return (result.rowcount or 0) == 1
