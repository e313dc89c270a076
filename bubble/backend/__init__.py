"""
Backend-as-a-service integration (Supabase).
"""

from .supabase_backend import Feedback, FeedbackType, SupabaseBackend, User, create_backend

__all__ = ["Feedback", "FeedbackType", "SupabaseBackend", "User", "create_backend"]
