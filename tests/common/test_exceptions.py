# tests/common/test_exceptions.py
"""
Unit тесты для иерархии исключений (src/common/exceptions.py).
"""

import pytest

from src.common.exceptions import (
    InvalidTransitionError,
    MatchingEngineError,
    MatchNotFoundError,
    NotParticipantError,
    PersistenceError,
    SearchValidationError,
)


class TestMatchingEngineError:
    """Тесты базового исключения."""

    def test_default_code(self) -> None:
        error = MatchingEngineError("Что-то пошло не так")

        assert error.code == "engine_error"
        assert error.to_dict() == {"code": "engine_error", "message": "Что-то пошло не так"}

    def test_custom_code(self) -> None:
        error = MatchingEngineError("Нет координат", code="validation_error")

        assert error.code == "validation_error"
        assert str(error) == "Нет координат"

    @pytest.mark.parametrize("cls, code", [
        (SearchValidationError, "validation_error"),
        (MatchNotFoundError, "match_not_found"),
        (NotParticipantError, "not_participant"),
        (PersistenceError, "persistence_error"),
    ])
    def test_subclass_codes(self, cls: type, code: str) -> None:
        error = cls("msg")

        assert isinstance(error, MatchingEngineError)
        assert error.code == code


class TestInvalidTransitionError:
    """Тесты ошибки перехода статуса."""

    def test_keeps_statuses(self) -> None:
        error = InvalidTransitionError("scheduled", "active")

        assert error.current == "scheduled"
        assert error.target == "active"
        assert "scheduled -> active" in error.message
        assert error.to_dict()["code"] == "invalid_transition"
