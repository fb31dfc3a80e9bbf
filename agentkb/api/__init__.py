from agentkb.api.routes import router

__all__ = ["router"]
