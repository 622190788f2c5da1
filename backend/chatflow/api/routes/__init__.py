from .flows import router as flows_router

__all__ = [
    "flows_router",
]
