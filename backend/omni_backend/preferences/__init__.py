from .routes import preferences_bp

__all__ = ["preferences_bp"]
