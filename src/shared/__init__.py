# src/shared/__init__.py
"""
Общий код между точками входа движка.

Модули:
- models: модели ответов REST (health)
"""

__all__: list[str] = []
