# models/user.py

from sqlalchemy import Column, Integer, String, BigInteger, Boolean, DateTime, JSON
from models.base import Base
from datetime import datetime
from typing import List


class User(Base):
    """Профиль игрока в объёме, нужном для требований и матчинга"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(BigInteger, unique=True, nullable=False, index=True)  # ← Telegram ID
    username = Column(String(255), unique=True, nullable=True)
    level = Column(Integer, default=1, nullable=False)
    xp = Column(Integer, default=0, nullable=False)
    interests = Column(JSON, default=list)  # Теги интересов для матчинга
    location = Column(String(255), nullable=True)
    is_banned = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def interest_set(self) -> set:
        return {tag.lower() for tag in (self.interests or [])}

    def shares_interests_with(self, tags: List[str]) -> int:
        """Количество общих тегов интересов"""
        return len(self.interest_set() & {tag.lower() for tag in tags})

    def __repr__(self):
        return f"<User user_id={self.user_id} level={self.level}>"
