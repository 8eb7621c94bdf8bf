"""
Request context resolution and FastAPI guards.
"""
