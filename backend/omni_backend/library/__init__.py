from .routes import library_bp

__all__ = ["library_bp"]
