"""实体类型配置."""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from picqsync.core.errors import UnknownEntityError
from picqsync.core.picqer import FetchedPage, RawRecord
from picqsync.core.upsert import DestinationRow, canonical_id, to_destination_row
from picqsync.utils.dates import parse_timestamp


@dataclass(frozen=True)
class EntityConfig:
    """单个实体类型的静态配置."""

    entity_type: str
    table_name: str
    id_field: str
    api_path: str
    name_field: str = "name"
    updated_field: str = "updated"
    since_param: str = "updated_since"
    explicit_identity: bool = False


ENTITY_CONFIGS: dict[str, EntityConfig] = {
    config.entity_type: config
    for config in (
        EntityConfig("product", "products", "idproduct", "/products", "productcode"),
        EntityConfig("picklist", "picklists", "idpicklist", "/picklists", "picklistid"),
        EntityConfig("warehouse", "warehouses", "idwarehouse", "/warehouses", "name"),
        EntityConfig("user", "users", "iduser", "/users", "username"),
        EntityConfig("supplier", "suppliers", "idsupplier", "/suppliers", "name"),
        EntityConfig(
            "batch",
            "batches",
            "idpicklist_batch",
            "/picklists/batches",
            "picklist_batchid",
        ),
        EntityConfig(
            "purchase_order",
            "purchase_orders",
            "idpurchaseorder",
            "/purchaseorders",
            "purchaseorderid",
        ),
        EntityConfig(
            "receipt",
            "receipts",
            "idreceipt",
            "/receipts",
            "receiptid",
            since_param="updated_after",
        ),
    )
}


def get_entity_config(
    entity_type: str, configs: Mapping[str, EntityConfig] = ENTITY_CONFIGS
) -> EntityConfig:
    """按实体类型查找配置."""
    try:
        return configs[entity_type]
    except KeyError:
        msg = f"未配置的实体类型: {entity_type}"
        raise UnknownEntityError(msg) from None


class PageFetcher(Protocol):
    """分页拉取接口（PicqerClient 实现）."""

    async def fetch_page(
        self,
        api_path: str,
        offset: int,
        limit: int = 100,
        updated_since: datetime | None = None,
        since_param: str = "updated_since",
    ) -> FetchedPage: ...


class EntitySource:
    """由配置驱动的实体数据源，所有实体类型共用一个实现."""

    def __init__(self, config: EntityConfig, fetcher: PageFetcher) -> None:
        self.config = config
        self._fetcher = fetcher

    @property
    def entity_type(self) -> str:
        return self.config.entity_type

    @property
    def id_field(self) -> str:
        return self.config.id_field

    async def fetch_page(
        self,
        offset: int,
        page_size: int,
        updated_since: datetime | None = None,
    ) -> FetchedPage:
        """拉取一页原始记录."""
        return await self._fetcher.fetch_page(
            self.config.api_path,
            offset,
            page_size,
            updated_since=updated_since,
            since_param=self.config.since_param,
        )

    def record_key(self, record: RawRecord) -> str | None:
        """记录的源 ID（字符串形式），缺失时返回 None."""
        return canonical_id(record.get(self.config.id_field))

    def transform(self, record: RawRecord) -> DestinationRow | None:
        """转换为目标行."""
        return to_destination_row(record, self.config.id_field)

    def record_updated_at(self, record: RawRecord) -> datetime | None:
        """记录的更新时间."""
        return parse_timestamp(record.get(self.config.updated_field))

    def display_name(self, record: RawRecord) -> str:
        """日志中使用的记录名称."""
        value: Any = record.get(self.config.name_field)
        return str(value) if value is not None else "-"
