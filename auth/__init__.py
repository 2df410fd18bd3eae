"""auth/ -- Authentication package for Inkwell.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, blog/, or cache/.
api/ imports from auth/, not the other way around.
"""
