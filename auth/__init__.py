"""auth/ -- Authentication and authorization package for FloraOps.

Layer rule: auth/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/ or orders/.
api/ and orders/ import from auth/, not the other way around.
"""
