"""blog/ -- Posts, comments, reactions, and the cached read/invalidate services.

Layer rule: blog/ may import from core/, cache/, and auth/ (for the user
directory). It does NOT import from api/.
"""
