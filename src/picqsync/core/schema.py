"""目标表结构协调：按记录形状补齐列."""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Unicode,
    UnicodeText,
    inspect,
    text,
)
from sqlalchemy.engine import Connection, Dialect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.types import TypeEngine

from picqsync.core.errors import SchemaError
from picqsync.utils.dates import looks_like_iso

logger = logging.getLogger(__name__)

KEY_COLUMN = "id"
MAX_IDENTIFIER_LENGTH = 128
MAX_INLINE_TEXT = 4000
MIN_TEXT_LENGTH = 255

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_]")


def sanitize_column_name(key: str) -> str:
    """将源字段名转为合法列名，无法转换时返回空字符串."""
    name = _INVALID_CHARS.sub("_", str(key))
    if name and name[0].isdigit():
        name = "_" + name
    return name[:MAX_IDENTIFIER_LENGTH]


def is_id_like(name: str) -> bool:
    """字段名是否像标识符（用定长文本保存，保持跨系统一致）."""
    lowered = name.lower()
    return lowered == KEY_COLUMN or lowered.startswith("id") or lowered.endswith("_id")


@dataclass(frozen=True)
class ColumnDescriptor:
    """列描述."""

    name: str
    type_: TypeEngine[Any]
    nullable: bool = True
    identity: bool = False

    def ddl_type(self, dialect: Dialect) -> str:
        return self.type_.compile(dialect=dialect)


def infer_column(name: str, value: Any) -> ColumnDescriptor:
    """根据字段名和运行时值推断列类型."""
    type_: TypeEngine[Any]
    if is_id_like(name):
        type_ = String(255)
    elif value is None:
        type_ = UnicodeText()
    elif isinstance(value, bool):
        type_ = Boolean()
    elif isinstance(value, int):
        type_ = BigInteger()
    elif isinstance(value, float):
        type_ = Float()
    elif isinstance(value, datetime):
        type_ = DateTime()
    elif isinstance(value, str):
        if looks_like_iso(value):
            type_ = DateTime()
        elif len(value) > MAX_INLINE_TEXT:
            type_ = UnicodeText()
        else:
            type_ = Unicode(min(MAX_INLINE_TEXT, max(MIN_TEXT_LENGTH, len(value) * 2)))
    else:
        type_ = UnicodeText()
    return ColumnDescriptor(name=name, type_=type_)


class SchemaCache:
    """
    每进程一份的表结构缓存.

    记录每张表已知的列（小写列名）和主键策略，由调用方注入，可显式重置。
    """

    def __init__(self) -> None:
        self._columns: dict[str, set[str]] = {}
        self._tables: set[str] = set()
        self._identity: dict[str, bool] = {}
        self._unique: dict[str, set[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def is_checked(self, table: str) -> bool:
        return table in self._columns

    def known_columns(self, table: str) -> set[str]:
        return set(self._columns.get(table, set()))

    def remember_columns(self, table: str, names: set[str]) -> None:
        self._columns.setdefault(table, set()).update(n.lower() for n in names)

    def missing(self, table: str, names: list[str]) -> list[str]:
        known = self._columns.get(table, set())
        return [n for n in names if n.lower() not in known]

    def table_exists(self, table: str) -> bool:
        return table in self._tables

    def remember_table(self, table: str) -> None:
        self._tables.add(table)

    def identity(self, table: str) -> bool | None:
        return self._identity.get(table)

    def remember_identity(self, table: str, value: bool) -> None:
        self._identity[table] = value

    def has_unique_index(self, table: str, column_name: str) -> bool:
        return column_name.lower() in self._unique.get(table, set())

    def remember_unique_index(self, table: str, column_name: str) -> None:
        self._unique.setdefault(table, set()).add(column_name.lower())

    def lock(self, table: str) -> asyncio.Lock:
        if table not in self._locks:
            self._locks[table] = asyncio.Lock()
        return self._locks[table]

    def invalidate(self, table: str) -> None:
        """丢弃某张表的列缓存，下次重新读取目录."""
        self._columns.pop(table, None)

    def reset(self, table: str | None = None) -> None:
        """清空缓存（指定表或全部）."""
        if table is None:
            self._columns.clear()
            self._tables.clear()
            self._identity.clear()
            self._unique.clear()
            return
        self._columns.pop(table, None)
        self._tables.discard(table)
        self._identity.pop(table, None)
        self._unique.pop(table, None)


class SchemaReconciler:
    """目标表结构协调器：只增列，从不删除或修改已有列."""

    def __init__(self, cache: SchemaCache | None = None) -> None:
        self.cache = cache or SchemaCache()
        self.catalog_reads = 0

    async def ensure_table(self, session: AsyncSession, table: str) -> None:
        """目标表不存在时以自然主键创建."""
        if self.cache.table_exists(table):
            return

        async with self.cache.lock(table):
            if self.cache.table_exists(table):
                return
            try:
                conn = await session.connection()
                created = await conn.run_sync(_create_natural_table, table)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                msg = f"创建表 {table} 失败: {e}"
                raise SchemaError(msg) from e

            if created:
                logger.info(f"已创建目标表 {table} (主键 {KEY_COLUMN})")
            self.cache.remember_table(table)

    async def get_columns(
        self, session: AsyncSession, table: str
    ) -> dict[str, ColumnDescriptor]:
        """从数据库目录读取列信息."""
        conn = await session.connection()
        self.catalog_reads += 1
        return await conn.run_sync(_read_columns, table)

    async def ensure_columns(
        self, session: AsyncSession, table: str, row: dict[str, Any]
    ) -> list[str]:
        """
        补齐 row 中出现而表中没有的列.

        Returns:
            list[str]: 本次新增的列名
        """
        names = [name for name in row if name]
        if self.cache.is_checked(table) and not self.cache.missing(table, names):
            return []

        async with self.cache.lock(table):
            try:
                if not self.cache.is_checked(table):
                    existing = await self.get_columns(session, table)
                    self.cache.remember_columns(table, set(existing))

                added: list[str] = []
                for name in self.cache.missing(table, names):
                    descriptor = infer_column(name, row[name])
                    await self._add_column(session, table, descriptor)
                    added.append(name)
                return added
            except SQLAlchemyError as e:
                await session.rollback()
                self.cache.invalidate(table)
                recovered = await self._recover_after_conflict(session, table, names)
                if recovered:
                    return []
                msg = f"补齐 {table} 列失败: {e}"
                raise SchemaError(msg) from e

    async def has_identity_column(self, session: AsyncSession, table: str) -> bool:
        """目标表主键是否由数据库生成（结果缓存）."""
        cached = self.cache.identity(table)
        if cached is not None:
            return cached

        try:
            conn = await session.connection()
            self.catalog_reads += 1
            identity = await conn.run_sync(_detect_identity, table)
        except SQLAlchemyError as e:
            await session.rollback()
            msg = f"读取 {table} 主键信息失败: {e}"
            raise SchemaError(msg) from e

        self.cache.remember_identity(table, identity)
        if identity:
            logger.info(f"表 {table} 使用数据库自增主键，按源 ID 列匹配")
        return identity

    async def ensure_unique_index(
        self, session: AsyncSession, table: str, column_name: str
    ) -> None:
        """确保源 ID 列上有唯一索引（自增主键表按该列去重）."""
        if self.cache.has_unique_index(table, column_name):
            return

        async with self.cache.lock(table):
            if self.cache.has_unique_index(table, column_name):
                return
            try:
                conn = await session.connection()
                self.catalog_reads += 1
                created = await conn.run_sync(_create_unique_index, table, column_name)
                await session.commit()
            except SchemaError:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                msg = f"为 {table}.{column_name} 创建唯一索引失败: {e}"
                raise SchemaError(msg) from e

            if created:
                logger.info(f"表 {table} 已为源 ID 列 {column_name} 创建唯一索引")
            self.cache.remember_unique_index(table, column_name)

    async def _add_column(
        self, session: AsyncSession, table: str, descriptor: ColumnDescriptor
    ) -> None:
        """ALTER TABLE 新增可空列."""
        conn = await session.connection()
        preparer = conn.dialect.identifier_preparer
        ddl_type = descriptor.ddl_type(conn.dialect)
        statement = (
            f"ALTER TABLE {preparer.quote(table)} "
            f"ADD {preparer.quote(descriptor.name)} {ddl_type} NULL"
        )
        logger.info(f"表 {table} 新增列 {descriptor.name} ({ddl_type})")
        await session.execute(text(statement))
        await session.commit()
        self.cache.remember_columns(table, {descriptor.name})

    async def _recover_after_conflict(
        self, session: AsyncSession, table: str, names: list[str]
    ) -> bool:
        """加列失败后重读目录：若列已被其他写入者创建则视为成功."""
        try:
            existing = await self.get_columns(session, table)
        except SQLAlchemyError:
            await session.rollback()
            return False
        self.cache.remember_columns(table, set(existing))
        return not self.cache.missing(table, names)


def _create_natural_table(conn: Connection, table: str) -> bool:
    if inspect(conn).has_table(table):
        return False
    Table(
        table,
        MetaData(),
        Column(KEY_COLUMN, String(255), primary_key=True, autoincrement=False),
    ).create(conn)
    return True


def _read_columns(conn: Connection, table: str) -> dict[str, ColumnDescriptor]:
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return {}
    columns: dict[str, ColumnDescriptor] = {}
    for col in inspector.get_columns(table):
        columns[col["name"].lower()] = ColumnDescriptor(
            name=col["name"],
            type_=col["type"],
            nullable=bool(col.get("nullable", True)),
            identity=bool(col.get("identity")) or col.get("autoincrement") is True,
        )
    return columns


def _detect_identity(conn: Connection, table: str) -> bool:
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return False

    pk_columns = inspector.get_pk_constraint(table).get("constrained_columns") or []
    if len(pk_columns) != 1:
        return False

    pk_name = pk_columns[0].lower()
    for col in inspector.get_columns(table):
        if col["name"].lower() != pk_name:
            continue
        if not isinstance(col["type"], Integer):
            return False
        if col.get("identity") or col.get("autoincrement") is True:
            return True
        # SQLite 的 INTEGER PRIMARY KEY 即 rowid 别名，由数据库生成
        return conn.dialect.name == "sqlite"
    return False


def _create_unique_index(conn: Connection, table: str, column_name: str) -> bool:
    inspector = inspect(conn)
    wanted = [column_name.lower()]
    for index in inspector.get_indexes(table):
        names = [c.lower() for c in index["column_names"] if c]
        if index.get("unique") and names == wanted:
            return False
    for constraint in inspector.get_unique_constraints(table):
        if [c.lower() for c in constraint["column_names"]] == wanted:
            return False

    target = Table(table, MetaData(), autoload_with=conn)
    for col in target.columns:
        if col.name.lower() == wanted[0]:
            name = f"ux_{table}_{col.name}"[:MAX_IDENTIFIER_LENGTH]
            Index(name, col, unique=True).create(conn, checkfirst=True)
            return True
    msg = f"表 {table} 没有列 {column_name}"
    raise SchemaError(msg)
