"""
SDK for Bubble.

Provides guarded access to the generative-content API.
"""

from .gemini_client import ChatSession, CredentialStore, GeminiClient

__all__ = ["ChatSession", "CredentialStore", "GeminiClient"]
