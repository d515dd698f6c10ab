# src/infra/document_store.py
"""
Документное хранилище поверх PostgreSQL (JSONB).

Все коллекции лежат в одной таблице documents:
(collection, id, data, created_at, updated_at).
Поддерживаются create/get/update по id и простые фильтры равенства и диапазона.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from src.common.clock import ensure_utc
from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.infra.database import DatabaseManager, get_db

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Оператор фильтра -> SQL оператор
_OPERATORS: dict[str, str] = {
    "==": "=",
    "!=": "<>",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}

Filter = tuple[str, str, Any]


def _check_field(name: str) -> str:
    """Проверяет имя поля документа (подставляется в SQL)."""
    if not _FIELD_RE.match(name):
        raise ValueError(f"Недопустимое имя поля: {name!r}")
    return name


def _field_expr(name: str, value: Any) -> str:
    """Выражение для поля data с приведением типа по значению."""
    field = _check_field(name)
    if isinstance(value, bool):
        return f"(data->>'{field}')::boolean"
    if isinstance(value, (int, float, datetime)):
        # Время хранится в документах как epoch-секунды (поля *_ts)
        return f"(data->>'{field}')::double precision"
    return f"data->>'{field}'"


def _to_param(value: Any) -> Any:
    """Значение параметра запроса."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return ensure_utc(value).timestamp()
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def build_where(filters: Iterable[Filter], start: int = 2) -> tuple[str, list[Any]]:
    """
    Собирает условие WHERE для фильтров документа.

    Args:
        filters: Последовательность (поле, оператор, значение)
        start: Номер первого плейсхолдера ($1 занят коллекцией)

    Returns:
        (SQL условие, список параметров)
    """
    clauses: list[str] = []
    params: list[Any] = []
    index = start

    for name, op, value in filters:
        if op == "in":
            values = [_to_param(v) for v in value]
            clauses.append(f"data->>'{_check_field(name)}' = ANY(${index}::text[])")
            params.append([str(v) for v in values])
        elif op in _OPERATORS:
            clauses.append(f"{_field_expr(name, value)} {_OPERATORS[op]} ${index}")
            params.append(_to_param(value))
        else:
            raise ValueError(f"Неподдерживаемый оператор: {op!r}")
        index += 1

    return " AND ".join(clauses), params


class DocumentStore:
    """Хранилище JSON документов по коллекциям."""

    def __init__(self, db: DatabaseManager | None = None) -> None:
        self.db = db or get_db()

    @staticmethod
    def _decode(raw: Any) -> dict[str, Any]:
        if raw is None:
            return {}
        if isinstance(raw, str):
            return json.loads(raw)
        return dict(raw)

    async def create(self, collection: str, data: dict[str, Any], doc_id: str | None = None) -> str:
        """
        Создаёт документ.

        Returns:
            ID документа
        """
        doc_id = doc_id or str(uuid4())
        await self.db.execute(
            """
            INSERT INTO documents (collection, id, data)
            VALUES ($1, $2, $3::jsonb)
            """,
            collection,
            doc_id,
            json.dumps(data, ensure_ascii=False, default=str),
        )
        await log_info(f"Документ {collection}/{doc_id} создан", type_msg=TypeMsg.DEBUG)
        return doc_id

    async def upsert(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Создаёт или полностью заменяет документ."""
        await self.db.execute(
            """
            INSERT INTO documents (collection, id, data)
            VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (collection, id)
            DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
            """,
            collection,
            doc_id,
            json.dumps(data, ensure_ascii=False, default=str),
        )

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Возвращает документ или None."""
        row = await self.db.fetchrow(
            "SELECT data FROM documents WHERE collection = $1 AND id = $2",
            collection,
            doc_id,
        )
        if row is None:
            return None
        return self._decode(row["data"])

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> bool:
        """
        Поверхностно сливает поля в документ.

        Args:
            collection: Коллекция
            doc_id: ID документа
            fields: Новые значения полей
            expected: Условие на текущие значения полей (сравнение на равенство);
                документ, не удовлетворяющий условию, не меняется

        Returns:
            True, если документ найден и обновлён
        """
        where, params = build_where(
            [(name, "==", value) for name, value in (expected or {}).items()],
            start=4,
        )
        sql = """
            UPDATE documents
            SET data = data || $3::jsonb, updated_at = NOW()
            WHERE collection = $1 AND id = $2
            """
        if where:
            sql += f" AND {where}"

        result = await self.db.execute(
            sql,
            collection,
            doc_id,
            json.dumps(fields, ensure_ascii=False, default=str),
            *params,
        )
        return result.endswith(" 1")

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Выборка документов по фильтрам.

        Args:
            collection: Коллекция
            filters: (поле, оператор, значение); операторы ==, !=, <, <=, >, >=, in
            order_by: Поле сортировки по возрастанию
            limit: Максимум документов
        """
        where, params = build_where(filters)
        sql = "SELECT data FROM documents WHERE collection = $1"
        if where:
            sql += f" AND {where}"
        if order_by and order_by.endswith("_ts"):
            sql += f" ORDER BY (data->>'{_check_field(order_by)}')::double precision"
        elif order_by:
            sql += f" ORDER BY data->>'{_check_field(order_by)}'"
        else:
            sql += " ORDER BY created_at"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"

        rows = await self.db.fetch(sql, collection, *params)
        return [self._decode(row["data"]) for row in rows]
