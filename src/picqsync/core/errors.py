"""同步引擎异常定义."""


class SyncError(Exception):
    """同步引擎基础异常."""


class FetchError(SyncError):
    """远程拉取失败（限流以外的 HTTP / 传输错误）."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimited(SyncError):
    """HTTP 429，仅在 Fetcher 内部处理."""

    def __init__(self, retry_after: float | None = None) -> None:
        super().__init__("rate limited")
        self.retry_after = retry_after


class SchemaError(SyncError):
    """列检查或创建失败，只影响当前记录."""


class UpsertError(SyncError):
    """单条记录写入失败."""


class RunError(SyncError):
    """同步运行级错误，当前运行终止."""


class ProgressStateError(SyncError):
    """非法的进度状态转换."""


class UnknownEntityError(SyncError):
    """未配置的实体类型."""
