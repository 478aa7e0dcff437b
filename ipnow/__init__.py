from .app import app, build_context, respond

__all__ = ["app", "build_context", "respond"]
