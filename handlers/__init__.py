#/handlers/__init__.py
"""Регистрация всех handlers и роутеров"""

# Основные handlers (явные импорты)
from . import (
    start,
    group_missions,
)

# Admin handlers
from .admin import matching as admin_matching

__all__ = [
    "start",
    "group_missions",
    "admin_matching",
]
