"""auth/ -- Identity, token and authorization package for Forge.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around; auth code reaches request-scoped services through app.state.
"""
