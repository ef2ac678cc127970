"""记录写入：按源 ID 幂等地插入或更新."""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Literal

from sqlalchemy import (
    column,
    func,
    insert,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy import table as table_clause
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import TableClause

from picqsync.core.errors import SchemaError, UpsertError
from picqsync.core.picqer import RawRecord
from picqsync.core.schema import (
    KEY_COLUMN,
    SchemaReconciler,
    is_id_like,
    sanitize_column_name,
)
from picqsync.utils.dates import looks_like_iso, parse_timestamp

logger = logging.getLogger(__name__)

Outcome = Literal["inserted", "updated", "skipped", "failed"]
DestinationRow = dict[str, Any]


@dataclass
class UpsertResult:
    """单条记录写入结果."""

    outcome: Outcome
    source_id: str | None = None
    reason: str | None = None

    @property
    def written(self) -> bool:
        return self.outcome in ("inserted", "updated")


def canonical_id(value: Any) -> str | None:
    """源 ID 统一转为字符串（兼容数字和字母 ID）."""
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    key = str(value).strip()
    return key or None


def to_destination_row(raw: RawRecord, id_field: str) -> DestinationRow | None:
    """
    将一条源记录展平为目标行.

    - 字段名清洗为合法列名
    - 源 ID 写入 id 列（字符串）
    - 嵌套对象/数组序列化为 JSON 文本
    - ISO 时间字符串转为 datetime

    缺少源 ID 时返回 None。
    """
    source_id = canonical_id(raw.get(id_field))
    if source_id is None:
        return None

    row: DestinationRow = {}
    for key, value in raw.items():
        name = sanitize_column_name(key)
        if not name or name.lower() == KEY_COLUMN:
            continue
        row[name] = _to_column_value(name, value)

    row[KEY_COLUMN] = source_id
    return row


def _to_column_value(name: str, value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if is_id_like(name) and isinstance(value, (int, float, str)) and not isinstance(
        value, bool
    ):
        return str(value)
    if isinstance(value, str) and looks_like_iso(value):
        return parse_timestamp(value) or value
    return value


@asynccontextmanager
async def identity_insert(session: AsyncSession, table: str) -> AsyncIterator[None]:
    """
    在 SQL Server 上临时开启 IDENTITY_INSERT.

    无论写入是否成功，退出时都会关闭；其他数据库无需切换。
    """
    dialect = session.get_bind().dialect
    if dialect.name != "mssql":
        yield
        return

    quoted = dialect.identifier_preparer.quote(table)
    logger.debug(f"开启 IDENTITY_INSERT: {table}")
    await session.execute(text(f"SET IDENTITY_INSERT {quoted} ON"))
    try:
        yield
    finally:
        await session.execute(text(f"SET IDENTITY_INSERT {quoted} OFF"))
        logger.debug(f"关闭 IDENTITY_INSERT: {table}")


class UpsertEngine:
    """幂等写入引擎."""

    def __init__(self, schema: SchemaReconciler | None = None) -> None:
        self.schema = schema or SchemaReconciler()

    async def upsert(
        self,
        session: AsyncSession,
        table: str,
        raw: RawRecord,
        id_field: str,
        *,
        explicit_identity: bool = False,
    ) -> UpsertResult:
        """转换并写入一条源记录."""
        row = to_destination_row(raw, id_field)
        if row is None:
            logger.warning(f"{table}: 记录缺少 {id_field}，跳过")
            return UpsertResult("skipped", reason=f"missing {id_field}")
        return await self.upsert_row(
            session, table, row, id_field, explicit_identity=explicit_identity
        )

    async def upsert_row(
        self,
        session: AsyncSession,
        table: str,
        row: DestinationRow,
        id_field: str,
        *,
        explicit_identity: bool = False,
    ) -> UpsertResult:
        """写入一条已转换的目标行（每条记录单独提交）."""
        source_id = row[KEY_COLUMN]

        try:
            await self.schema.ensure_table(session, table)
            identity = await self.schema.has_identity_column(session, table)
            if identity:
                row = _identity_row(row, id_field)
            await self.schema.ensure_columns(session, table, row)
            if identity:
                await self.schema.ensure_unique_index(
                    session, table, sanitize_column_name(id_field)
                )
        except SchemaError as e:
            logger.warning(f"{table}: 记录 {source_id} 结构协调失败 - {e}")
            return UpsertResult("failed", source_id, str(e))

        try:
            if identity:
                outcome = await self._write_identity(
                    session, table, row, id_field, source_id, explicit_identity
                )
            else:
                outcome = await self._write_natural(session, table, row, source_id)
            await session.commit()
        except (SQLAlchemyError, UpsertError) as e:
            await session.rollback()
            logger.warning(f"{table}: 记录 {source_id} 写入失败 - {e}")
            return UpsertResult("failed", source_id, str(e))

        return UpsertResult(outcome, source_id)

    async def _write_natural(
        self,
        session: AsyncSession,
        table: str,
        row: DestinationRow,
        source_id: str,
    ) -> Outcome:
        """自然主键表：按 id 查找，存在则更新，否则插入."""
        target = _table(table, row)
        key = target.c[KEY_COLUMN]

        result = await session.execute(select(key).where(key == source_id).limit(1))
        if result.first() is None:
            await session.execute(insert(target).values(row))
            return "inserted"

        values = {k: v for k, v in row.items() if k != KEY_COLUMN}
        if values:
            await session.execute(update(target).where(key == source_id).values(values))
        return "updated"

    async def _write_identity(
        self,
        session: AsyncSession,
        table: str,
        row: DestinationRow,
        id_field: str,
        source_id: str,
        explicit_identity: bool,
    ) -> Outcome:
        """自增主键表：按源 ID 列查找，更新时使用数据库生成的主键."""
        lookup = sanitize_column_name(id_field)
        target = _table(table, row, KEY_COLUMN)
        key = target.c[KEY_COLUMN]

        result = await session.execute(
            select(key).where(target.c[lookup] == source_id).limit(1)
        )
        found = result.first()
        if found is not None:
            await session.execute(update(target).where(key == found[0]).values(row))
            return "updated"

        if not explicit_identity:
            await session.execute(insert(target).values(row))
            return "inserted"

        try:
            generated = int(source_id)
        except ValueError as e:
            msg = f"源 ID {source_id} 不是整数，无法写入自增主键"
            raise UpsertError(msg) from e

        async with identity_insert(session, table):
            await session.execute(insert(target).values({**row, KEY_COLUMN: generated}))
        return "inserted"


def _identity_row(row: DestinationRow, id_field: str) -> DestinationRow:
    """自增主键表不写 id 列，源 ID 存入源 ID 列."""
    lookup = sanitize_column_name(id_field)
    converted = {k: v for k, v in row.items() if k != KEY_COLUMN}
    converted[lookup] = row[KEY_COLUMN]
    return converted


def _table(name: str, row: DestinationRow, *extra: str) -> TableClause:
    names = list(dict.fromkeys([*extra, *row]))
    return table_clause(name, *(column(n) for n in names))


async def count_rows(session: AsyncSession, table: str) -> int:
    """目标表行数，表不存在时返回 0."""
    conn = await session.connection()
    exists = await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(table))
    if not exists:
        return 0
    result = await session.execute(select(func.count()).select_from(table_clause(table)))
    return int(result.scalar_one())
