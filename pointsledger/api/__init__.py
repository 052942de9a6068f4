"""
API blueprints.
"""
from .points import points_bp

__all__ = ['points_bp']
