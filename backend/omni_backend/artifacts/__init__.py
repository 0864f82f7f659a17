from .routes import artifacts_bp

__all__ = ["artifacts_bp"]
