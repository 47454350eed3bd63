from surveysync.sync.engine import sync_engine

__all__ = ["sync_engine"]
