from farewatch.schemas.quote import Quote

__all__ = ["Quote"]
