"""orders/ -- Order lifecycle package for FloraOps.

Layer rule: orders/ imports only auth/ + core/ + stdlib + third-party libraries.
It does NOT import from api/.
"""
