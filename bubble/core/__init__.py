"""
Core modules for Bubble.

This package contains request orchestration, error classification,
usage counting and background batch dispatch.
"""
