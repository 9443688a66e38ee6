#/models/base.py
"""
Базовый класс SQLAlchemy для всех моделей.
Этот файл ДОЛЖЕН быть импортирован ПЕРВЫМ, до всех моделей!
"""

from sqlalchemy.orm import declarative_base


# ✅ ЕДИНСТВЕННЫЙ Base в проекте
Base = declarative_base()
