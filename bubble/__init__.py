"""
Bubble: IB Math tutoring backed by Gemini and Supabase.
"""

__version__ = "0.1.0"
