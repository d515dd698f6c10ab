# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Role(str, Enum):
    """Роль участника поиска."""
    PROVIDER = "provider"
    SEEKER = "seeker"


class RideMode(str, Enum):
    """Режим поездки."""
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class SessionStatus(str, Enum):
    """Статусы поисковой сессии."""
    SCHEDULED = "scheduled"
    ACTIVATING = "activating"
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"


class MatchStatus(str, Enum):
    """Статусы предложения о совпадении."""
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class MatchQuality(str, Enum):
    """Качество совпадения маршрутов."""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class LifecycleEvent(str, Enum):
    """События жизненного цикла, доставляемые участникам."""
    SEARCH_STARTED = "search_started"
    SEARCH_STOPPED = "search_stopped"
    SEARCH_TIMEOUT = "search_timeout"
    SCHEDULED_ACTIVATED = "scheduled_activated"
    MATCH_PROPOSED = "match_proposed"
    MATCH_ACCEPTED = "match_accepted"
    MATCH_REJECTED = "match_rejected"
    MATCH_EXPIRED = "match_expired"


class Collection(str, Enum):
    """Коллекции документного хранилища."""
    MATCHES = "matches"
    SEARCH_SESSIONS = "search_sessions"
    NOTIFICATIONS = "notifications"


# Сессии, участвующие в матчинге
MATCHABLE_STATUSES: frozenset[SessionStatus] = frozenset({
    SessionStatus.ACTIVATING,
    SessionStatus.ACTIVE,
})

# Нетерминальные статусы сессии
LIVE_STATUSES: frozenset[SessionStatus] = frozenset({
    SessionStatus.SCHEDULED,
    SessionStatus.ACTIVATING,
    SessionStatus.ACTIVE,
})

# Предложения, блокирующие повторный матч той же пары
BLOCKING_MATCH_STATUSES: frozenset[MatchStatus] = frozenset({
    MatchStatus.PROPOSED,
    MatchStatus.ACCEPTED,
})
