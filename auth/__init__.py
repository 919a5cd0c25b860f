"""auth/ -- Identity, token, and session package for Keyward.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, admin/, or client/.
api/ and admin/ import from auth/, not the other way around.
"""
