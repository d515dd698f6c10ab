# src/common/exceptions.py
"""
Иерархия исключений движка матчинга.
"""

from __future__ import annotations


class MatchingEngineError(Exception):
    """Базовое исключение движка."""

    code: str = "engine_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        """Представление для отправки клиенту."""
        return {"code": self.code, "message": self.message}


class SearchValidationError(MatchingEngineError):
    """Некорректный запрос на поиск."""
    code = "validation_error"


class MatchNotFoundError(MatchingEngineError):
    """Предложение о совпадении не найдено."""
    code = "match_not_found"


class InvalidTransitionError(MatchingEngineError):
    """Недопустимый переход статуса."""
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Переход {current} -> {target} запрещён")
        self.current = current
        self.target = target


class NotParticipantError(MatchingEngineError):
    """Участник не относится к предложению."""
    code = "not_participant"


class PersistenceError(MatchingEngineError):
    """Ошибка записи в документное хранилище."""
    code = "persistence_error"
