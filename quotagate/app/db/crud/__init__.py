from quotagate.app.db.crud.usage import get_usage_rows, upsert_usage

__all__ = ["get_usage_rows", "upsert_usage"]
