"""
Tutoring domain: models, output schemas and operations.
"""

from .service import TutorService

__all__ = ["TutorService"]
