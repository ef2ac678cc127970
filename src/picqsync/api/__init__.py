"""API 路由."""
