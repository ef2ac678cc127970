"""Picqer REST API 客户端."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from picqsync.core.errors import FetchError, RateLimited
from picqsync.utils.dates import format_since

logger = logging.getLogger(__name__)

RawRecord = dict[str, Any]


@dataclass
class PicqerConfig:
    """Picqer 连接配置."""

    base_url: str
    api_key: str
    user_agent: str = "picqsync"
    timeout: float = 30.0
    rate_limit_sleep: float = 20.0
    rate_limit_max_sleep: float = 300.0
    rate_limit_max_retries: int | None = 10
    # 整个客户端共享的请求节奏，None 表示不限速
    requests_per_minute: int | None = None


@dataclass
class FetchedPage:
    """一页拉取结果."""

    records: list[RawRecord]
    has_more: bool
    offset: int = 0
    # 响应中的原始元素数（含被忽略的非对象元素），用于推进 offset
    item_count: int | None = None

    @property
    def size(self) -> int:
        return self.item_count if self.item_count is not None else len(self.records)


@dataclass
class ClientStats:
    """请求统计."""

    total_requests: int = 0
    rate_limit_hits: int = 0
    retries: int = 0
    paced_waits: int = 0
    wait_seconds: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "total_requests": self.total_requests,
            "rate_limit_hits": self.rate_limit_hits,
            "retries": self.retries,
            "paced_waits": self.paced_waits,
            "wait_seconds": round(self.wait_seconds, 3),
        }


class PicqerClient:
    """Picqer API 客户端，只负责分页拉取，不持有检查点状态."""

    def __init__(
        self,
        config: PicqerConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.stats = ClientStats()
        self._sleep = sleep
        self._clock = clock
        self._pace_lock = asyncio.Lock()
        self._last_request_at: float | None = None
        self._backoff = wait_exponential(
            multiplier=config.rate_limit_sleep, max=config.rate_limit_max_sleep
        )
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            auth=httpx.BasicAuth(config.api_key, ""),
            headers={
                "User-Agent": config.user_agent,
                "Accept": "application/json",
            },
            timeout=config.timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    async def fetch_page(
        self,
        api_path: str,
        offset: int,
        limit: int = 100,
        updated_since: datetime | None = None,
        since_param: str = "updated_since",
    ) -> FetchedPage:
        """
        拉取一页数据.

        Args:
            api_path: 资源路径，如 /warehouses
            offset: 分页偏移
            limit: 页大小
            updated_since: 只拉取此时间之后更新的记录
            since_param: 时间过滤参数名

        Returns:
            FetchedPage: 记录列表；返回数量等于 limit 时认为还有下一页
        """
        if offset < 0:
            msg = f"offset 不能为负数: {offset}"
            raise ValueError(msg)
        if limit <= 0:
            msg = f"limit 必须为正数: {limit}"
            raise ValueError(msg)

        params: dict[str, Any] = {"offset": offset, "limit": limit}
        if updated_since is not None:
            params[since_param] = format_since(updated_since)

        payload = await self._get_with_rate_limit(api_path, params)
        items = self._extract_items(payload, api_path)[:limit]
        records = [item for item in items if isinstance(item, dict)]
        if len(records) < len(items):
            dropped = len(items) - len(records)
            logger.warning(f"{api_path} offset={offset}: 忽略 {dropped} 个非对象元素")

        return FetchedPage(
            records=records,
            has_more=len(items) == limit,
            item_count=len(items),
            offset=offset,
        )

    async def test_connection(self) -> bool:
        """测试 API 连接."""
        try:
            await self.fetch_page("/products", offset=0, limit=1)
        except FetchError as e:
            logger.error(f"Picqer 连接测试失败: {e}")
            return False
        logger.info("Picqer 连接测试成功")
        return True

    async def _get_with_rate_limit(
        self, api_path: str, params: dict[str, Any]
    ) -> Any:
        """GET 请求，429 时按指数退避重试."""
        max_retries = self.config.rate_limit_max_retries
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimited),
            stop=(
                stop_never if max_retries is None else stop_after_attempt(max_retries + 1)
            ),
            wait=self._backoff_wait,
            sleep=self._sleep,
            before_sleep=self._before_retry,
        )
        try:
            return await retrying(self._get, api_path, params)
        except RetryError as e:
            retries = e.last_attempt.attempt_number - 1
            msg = f"请求 {api_path} 被限流，已重试 {retries} 次"
            raise FetchError(msg, status_code=429) from e

    def _backoff_wait(self, retry_state: RetryCallState) -> float:
        """退避时间：优先 Retry-After，否则指数增长（都有上限）."""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return min(error.retry_after, self.config.rate_limit_max_sleep)
        return self._backoff(retry_state)

    def _before_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.stats.retries += 1
        self.stats.wait_seconds += delay
        logger.warning(
            f"请求被限流，{delay:.1f}s 后重试 (第 {retry_state.attempt_number} 次)"
        )

    async def _pace(self) -> None:
        """按 requests_per_minute 控制请求间隔（所有调用方共享）."""
        per_minute = self.config.requests_per_minute
        if not per_minute:
            return
        interval = 60.0 / per_minute

        async with self._pace_lock:
            if self._last_request_at is not None:
                delay = self._last_request_at + interval - self._clock()
                if delay > 0:
                    self.stats.paced_waits += 1
                    self.stats.wait_seconds += delay
                    await self._sleep(delay)
            self._last_request_at = self._clock()

    async def _get(self, api_path: str, params: dict[str, Any]) -> Any:
        """执行单次请求."""
        await self._pace()
        self.stats.total_requests += 1
        url = "/" + api_path.lstrip("/")

        try:
            response = await self._client.get(url, params=params)
        except httpx.TransportError as e:
            msg = f"请求 {url} 失败: {e}"
            raise FetchError(msg) from e

        if response.status_code == 429:
            self.stats.rate_limit_hits += 1
            raise RateLimited(_parse_retry_after(response))

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = f"请求 {url} 返回 {response.status_code}: {response.text[:200]}"
            raise FetchError(msg, status_code=response.status_code) from e

        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None:
            logger.debug(
                f"Picqer 限额剩余 {remaining}/{response.headers.get('x-ratelimit-limit')}"
            )

        try:
            return response.json()
        except ValueError as e:
            msg = f"请求 {url} 返回的不是 JSON"
            raise FetchError(msg, status_code=response.status_code) from e

    def _extract_items(self, payload: Any, api_path: str) -> list[Any]:
        """兼容裸数组和 {"data": [...]} 两种返回格式."""
        if isinstance(payload, list):
            items = payload
        elif isinstance(payload, dict) and isinstance(payload.get("data"), list):
            items = payload["data"]
        else:
            msg = f"{api_path} 返回了无法识别的数据格式: {type(payload).__name__}"
            raise FetchError(msg)

        return items


def _parse_retry_after(response: httpx.Response) -> float | None:
    """解析 Retry-After 头（仅支持秒数）."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
