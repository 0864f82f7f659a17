from .routes import search_bp

__all__ = ["search_bp"]
